"""
Messages exchanged between guest worker threads and embedding-runtime
processes, and the mailbox that receives them.

Messages are packed with msgpack on delivery and unpacked on receipt, so a
sender and a receiver never share a mutable object.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

import msgpack

from wasmbridge.errors import (
    ArgumentError,
    ExportNotFound,
    MailboxClosed,
    PoisonedResource,
    TrapOrHostError,
    UnsupportedResultKind,
    WasmBridgeError,
)

logger = logging.getLogger(__name__)

# Message types
MSG_INVOKE_CALLBACK = 'invoke_callback'
MSG_RETURNED_FUNCTION_CALL = 'returned_function_call'

MAX_MESSAGE_SIZE = 10_000_000  # 10MB

_NO_CORRELATION_ID = object()

# Failure reasons of a returned function call
REASON_EXPORT_NOT_FOUND = 'export_not_found'
REASON_ARGUMENT_ERROR = 'argument_error'
REASON_TRAP_OR_HOST_ERROR = 'trap_or_host_error'
REASON_UNSUPPORTED_RESULT_KIND = 'unsupported_result_kind'
REASON_POISONED_RESOURCE = 'poisoned_resource'

_ERRORS_BY_REASON = {
    REASON_EXPORT_NOT_FOUND: ExportNotFound,
    REASON_ARGUMENT_ERROR: ArgumentError,
    REASON_TRAP_OR_HOST_ERROR: TrapOrHostError,
    REASON_UNSUPPORTED_RESULT_KIND: UnsupportedResultKind,
    REASON_POISONED_RESOURCE: PoisonedResource,
}


@dataclass
class CallbackRequest:
    """A guest called a host import and waits for the reply to `token`."""
    msg_type: ClassVar[str] = MSG_INVOKE_CALLBACK

    token: int
    namespace: str
    name: str
    params: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'token': self.token,
            'namespace': self.namespace,
            'name': self.name,
            'params': list(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CallbackRequest':
        return cls(
            token=data['token'],
            namespace=data['namespace'],
            name=data['name'],
            params=data.get('params', []),
        )


@dataclass
class CallResult:
    """The single reply to an export call, tagged with its correlation id."""
    msg_type: ClassVar[str] = MSG_RETURNED_FUNCTION_CALL

    correlation_id: Any
    ok: bool
    results: list = field(default_factory=list)
    reason: Optional[str] = None
    detail: str = ''

    @classmethod
    def success(cls, correlation_id, results: list) -> 'CallResult':
        return cls(correlation_id=correlation_id, ok=True, results=results)

    @classmethod
    def failure(cls, correlation_id, reason: str, detail: str) -> 'CallResult':
        return cls(correlation_id=correlation_id, ok=False, reason=reason, detail=detail)

    def raise_for_error(self):
        """Raise the error matching a failed call; no-op on success."""
        if self.ok:
            return
        error_class = _ERRORS_BY_REASON.get(self.reason, WasmBridgeError)
        raise error_class(self.detail)

    def to_dict(self) -> dict:
        return {
            'correlation_id': self.correlation_id,
            'ok': self.ok,
            'results': list(self.results),
            'reason': self.reason,
            'detail': self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CallResult':
        return cls(
            correlation_id=data.get('correlation_id'),
            ok=data['ok'],
            results=data.get('results', []),
            reason=data.get('reason'),
            detail=data.get('detail', ''),
        )


_MESSAGE_TYPES = {
    MSG_INVOKE_CALLBACK: CallbackRequest,
    MSG_RETURNED_FUNCTION_CALL: CallResult,
}


def create_message(msg_type: str, data: Any) -> bytes:
    """Packs a message envelope."""
    message = {
        'type': msg_type,
        'data': data,
    }
    packed_message = msgpack.packb(message, use_bin_type=True)

    if len(packed_message) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(packed_message)} bytes")

    return packed_message


def parse_message(packed_message: bytes):
    """Unpacks an envelope into its message object."""
    message = msgpack.unpackb(packed_message, raw=False)
    msg_type = message.get('type')
    message_class = _MESSAGE_TYPES.get(msg_type)
    if message_class is None:
        raise ValueError(f"Unknown message type: {msg_type}")
    return message_class.from_dict(message['data'])


class Mailbox:
    """
    The inbox of one embedding-runtime process.

    Must be created on the event loop thread (or be given the loop);
    `deliver` may be called from any thread.
    """
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self.delivered = 0
        self.closed = False

    def deliver(self, message):
        """
        Fire-and-forget delivery of a message object.

        A correlation id travels beside the packed payload, so the receiver
        gets back the very object the caller tagged its call with.
        """
        if self.closed:
            raise MailboxClosed("mailbox is closed")
        data = message.to_dict()
        correlation_id = data.pop('correlation_id', _NO_CORRELATION_ID)
        packed = create_message(message.msg_type, data)
        self.delivered += 1
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (packed, correlation_id))

    async def receive(self, timeout: Optional[float] = None):
        """Waits for the next message. Raises asyncio.TimeoutError on timeout."""
        packed, correlation_id = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        message = parse_message(packed)
        if correlation_id is not _NO_CORRELATION_ID:
            message.correlation_id = correlation_id
        return message

    def close(self):
        """Refuse every later delivery."""
        self.closed = True

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()
