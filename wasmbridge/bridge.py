"""
Callback bridge: suspends a guest call while an embedding-runtime process
computes the result of a host import.

Each host import invocation gets a single-use token. The token indexes an
arena slot holding the live caller (the execution context of the suspended
call), the expected result types and a one-shot reply slot guarded by a
condition variable. The worker thread sleeps on that condition until
`submit_reply` fills the slot. When the call frame returns, the slot is
tombstoned and removed; the caller it held is never handed out again.
"""
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Sequence

import wasmtime

from wasmbridge.errors import (
    ArgumentError,
    CallbackAborted,
    CallbackTimeout,
    CallbackTokenError,
    OutOfBounds,
)
from wasmbridge.mailbox import CallbackRequest
from wasmbridge.values import WasmValue, decode_arguments, encode_results, from_guest, to_guest

logger = logging.getLogger(__name__)

# Callback states
AWAITING_REPLY = 'awaiting_reply'
RESOLVED = 'resolved'
ABORTED = 'aborted'


class PendingCallback:
    """Arena slot of one suspended host import invocation."""
    def __init__(self, token: int, namespace: str, name: str,
                 result_types: Sequence[str], caller, target=None):
        self.token = token
        self.target = target
        self.namespace = namespace
        self.name = name
        self.result_types = list(result_types)
        self.state = AWAITING_REPLY
        self.condition = threading.Condition()
        # (success, values, reason), written exactly once
        self.outcome: Optional[tuple[bool, list[WasmValue], str]] = None
        self.tombstoned = False
        self._caller = caller

    @property
    def answered(self) -> bool:
        return self.outcome is not None

    @property
    def caller(self):
        if self.tombstoned:
            raise CallbackTokenError(
                f"execution context of callback token {self.token} is no longer valid"
            )
        return self._caller

    def tombstone(self):
        with self.condition:
            self.tombstoned = True
            self._caller = None


class CallbackBridge:
    """
    Registry of in-flight host import invocations.

    Args:
        reply_timeout: seconds a worker waits for a reply before the callback
            is aborted. None (the default) waits forever.
        monitor: optional Monitor receiving callback metrics.
    """
    def __init__(self, reply_timeout: Optional[float] = None, monitor=None):
        self.reply_timeout = reply_timeout
        self.monitor = monitor
        self._lock = threading.Lock()
        self._pending: dict[int, PendingCallback] = {}
        self._tokens = itertools.count(1)

    def _register(self, namespace: str, name: str, result_types: Sequence[str],
                  caller, target) -> PendingCallback:
        with self._lock:
            token = next(self._tokens)
            while token in self._pending:
                token = next(self._tokens)
            pending = PendingCallback(token, namespace, name, result_types, caller, target)
            self._pending[token] = pending
        if self.monitor:
            self.monitor.callback_started()
        return pending

    def _remove(self, pending: PendingCallback):
        pending.tombstone()
        with self._lock:
            self._pending.pop(pending.token, None)
        if self.monitor:
            self.monitor.callback_finished(pending.state)

    def _lookup(self, token: int) -> PendingCallback:
        with self._lock:
            pending = self._pending.get(token)
        if pending is None:
            raise CallbackTokenError(f"unknown or already consumed callback token {token}")
        return pending

    def invoke(self, caller, target, namespace: str, name: str,
               param_types: Sequence[str], result_types: Sequence[str], raw_params: Sequence):
        """
        Body of every bridged host import. Runs on the worker thread that
        executes the guest call and blocks it until the reply arrives.

        Returns the raw result(s) for wasmtime, or raises CallbackAborted to
        trap the guest.
        """
        params = encode_results(from_guest(param_types, raw_params))
        pending = self._register(namespace, name, result_types, caller, target)
        logger.debug(f"Callback {pending.token} awaiting reply for {namespace}.{name}{tuple(params)}")

        try:
            try:
                target.deliver(CallbackRequest(pending.token, namespace, name, params))
            except Exception as e:
                with pending.condition:
                    pending.state = ABORTED
                raise CallbackAborted(f"could not deliver callback {namespace}.{name}: {e}") from e

            with pending.condition:
                arrived = pending.condition.wait_for(lambda: pending.answered, timeout=self.reply_timeout)
                if not arrived:
                    pending.state = ABORTED
                    pending.outcome = (False, [], 'timeout')
                success, values, reason = pending.outcome
        finally:
            self._remove(pending)

        if not arrived:
            logger.warning(f"Callback {pending.token} ({namespace}.{name}) got no reply within {self.reply_timeout}s")
            raise CallbackTimeout(
                f"callback {namespace}.{name} got no reply within {self.reply_timeout} seconds"
            )
        if not success:
            logger.warning(f"Callback {pending.token} ({namespace}.{name}) aborted: {reason}")
            raise CallbackAborted(f"callback {namespace}.{name} failed: {reason}")

        raw_results = to_guest(values)
        if not result_types:
            return None
        if len(result_types) == 1:
            return raw_results[0]
        return raw_results

    def submit_reply(self, token: int, success: bool, results: Optional[Sequence] = None) -> str:
        """
        Deliver the outcome of the callback behind `token` and wake its worker.

        Returns the resulting state (RESOLVED or ABORTED). A result list that
        does not match the import's declared results aborts the callback.

        Raises:
            CallbackTokenError: if the token is unknown, already answered or
                its call frame has already returned.
        """
        pending = self._lookup(token)
        with pending.condition:
            if pending.tombstoned or pending.answered:
                raise CallbackTokenError(f"callback token {token} was already answered")
            if success:
                try:
                    values = decode_arguments(pending.result_types, list(results or []),
                                              strict_floats=False)
                    pending.outcome = (True, values, '')
                    pending.state = RESOLVED
                except ArgumentError as e:
                    pending.outcome = (
                        False, [],
                        f"could not convert callback result param to expected return signature: {e}"
                    )
                    pending.state = ABORTED
            else:
                pending.outcome = (False, [], 'the host callback reported an error')
                pending.state = ABORTED
            pending.condition.notify_all()
            state = pending.state
        logger.debug(f"Callback {token} {state}")
        return state

    def abort_pending(self, target, reason: str = 'the embedding process stopped') -> int:
        """
        Abort every awaiting callback whose request went to `target`.
        Returns how many were aborted.
        """
        with self._lock:
            pending = [p for p in self._pending.values() if p.target is target]
        aborted = 0
        for callback in pending:
            with callback.condition:
                if callback.tombstoned or callback.answered:
                    continue
                callback.outcome = (False, [], reason)
                callback.state = ABORTED
                callback.condition.notify_all()
            aborted += 1
        if aborted:
            logger.warning(f"Aborted {aborted} pending callbacks: {reason}")
        return aborted

    @contextmanager
    def context(self, token: int):
        """
        Yield the live caller of an awaiting callback. The worker can not
        resume while the context is held.
        """
        pending = self._lookup(token)
        with pending.condition:
            if pending.answered:
                raise CallbackTokenError(
                    f"execution context of callback token {token} is no longer valid"
                )
            yield pending.caller

    def _caller_memory(self, caller, memory_name: str) -> wasmtime.Memory:
        memory = caller.get(memory_name)
        if not isinstance(memory, wasmtime.Memory):
            raise ArgumentError(f"the caller exports no memory named `{memory_name}`")
        return memory

    def _caller_global(self, caller, global_name: str) -> wasmtime.Global:
        global_ = caller.get(global_name)
        if not isinstance(global_, wasmtime.Global):
            raise ArgumentError(f"the caller exports no global named `{global_name}`")
        return global_

    def read_memory(self, token: int, offset: int, length: int, memory_name: str = 'memory') -> bytes:
        with self.context(token) as caller:
            memory = self._caller_memory(caller, memory_name)
            data_len = memory.data_len(caller)
            if offset < 0 or length < 0 or offset + length > data_len:
                raise OutOfBounds(f"read of {length} bytes at offset {offset} exceeds {data_len} bytes")
            return bytes(memory.read(caller, offset, offset + length))

    def write_memory(self, token: int, offset: int, data: bytes, memory_name: str = 'memory'):
        with self.context(token) as caller:
            memory = self._caller_memory(caller, memory_name)
            data_len = memory.data_len(caller)
            if offset < 0 or offset + len(data) > data_len:
                raise OutOfBounds(f"write of {len(data)} bytes at offset {offset} exceeds {data_len} bytes")
            memory.write(caller, bytes(data), offset)

    def get_global(self, token: int, global_name: str):
        with self.context(token) as caller:
            return self._caller_global(caller, global_name).value(caller)

    def set_global(self, token: int, global_name: str, value):
        with self.context(token) as caller:
            global_ = self._caller_global(caller, global_name)
            try:
                global_.set_value(caller, value)
            except wasmtime.WasmtimeError as e:
                raise ArgumentError(f"could not set global `{global_name}`: {e}") from e

    def pending_tokens(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
