"""
Tests for mailbox messages.
"""
import asyncio
import threading

import msgpack
import pytest

from wasmbridge.errors import ArgumentError, ExportNotFound, MailboxClosed, WasmBridgeError
from wasmbridge.mailbox import (
    CallbackRequest,
    CallResult,
    Mailbox,
    MAX_MESSAGE_SIZE,
    MSG_INVOKE_CALLBACK,
    REASON_ARGUMENT_ERROR,
    REASON_EXPORT_NOT_FOUND,
    create_message,
    parse_message,
)


class TestMessages:
    def test_envelope(self):
        packed = create_message(MSG_INVOKE_CALLBACK, CallbackRequest(3, 'env', 'log', [1]).to_dict())
        message = msgpack.unpackb(packed, raw=False)
        assert message['type'] == MSG_INVOKE_CALLBACK
        assert message['data']['token'] == 3

    def test_message_size_limit(self):
        with pytest.raises(ValueError, match="Message too large"):
            create_message(MSG_INVOKE_CALLBACK, {'data': 'x' * (MAX_MESSAGE_SIZE + 1)})

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown message type"):
            parse_message(create_message('gossip', {}))

    def test_parse_call_result(self):
        result = CallResult.failure(9, REASON_EXPORT_NOT_FOUND, "exported function `f` not found")
        parsed = parse_message(create_message(result.msg_type, result.to_dict()))
        assert parsed == result

    def test_raise_for_error(self):
        CallResult.success(1, [1]).raise_for_error()
        with pytest.raises(ExportNotFound, match="not found"):
            CallResult.failure(1, REASON_EXPORT_NOT_FOUND, "exported function `f` not found").raise_for_error()
        with pytest.raises(ArgumentError):
            CallResult.failure(1, REASON_ARGUMENT_ERROR, "bad").raise_for_error()
        with pytest.raises(WasmBridgeError):
            CallResult.failure(1, 'something_else', "?").raise_for_error()


class TestMailbox:
    @pytest.mark.asyncio
    async def test_delivery_copies(self):
        mailbox = Mailbox()
        params = [1, 2]
        mailbox.deliver(CallbackRequest(1, 'env', 'f', params))
        params.append(3)
        received = await mailbox.receive(timeout=1)
        assert received.params == [1, 2]
        assert received.params is not params

    @pytest.mark.asyncio
    async def test_deliver_from_thread(self):
        mailbox = Mailbox()
        thread = threading.Thread(target=mailbox.deliver, args=(CallResult.success('x', [5]),))
        thread.start()
        received = await mailbox.receive(timeout=1)
        thread.join()
        assert received.results == [5]
        assert mailbox.delivered == 1
        assert mailbox.empty()

    @pytest.mark.asyncio
    async def test_receive_timeout(self):
        mailbox = Mailbox()
        with pytest.raises(asyncio.TimeoutError):
            await mailbox.receive(timeout=0.01)

    @pytest.mark.asyncio
    async def test_correlation_id_is_not_serialized(self):
        mailbox = Mailbox()
        mailbox.deliver(CallResult.success(('pid', 7), [1]))
        received = await mailbox.receive(timeout=1)
        assert isinstance(received.correlation_id, tuple)
        assert received.correlation_id == ('pid', 7)

    @pytest.mark.asyncio
    async def test_closed_mailbox_refuses_delivery(self):
        mailbox = Mailbox()
        mailbox.close()
        with pytest.raises(MailboxClosed):
            mailbox.deliver(CallResult.success(1, []))
        assert mailbox.empty()
