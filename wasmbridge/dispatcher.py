"""
Execution dispatcher: runs guest export calls on dedicated worker threads and
reports each outcome as one message to the caller's mailbox.
"""
import itertools
import logging
import threading
import time
from typing import Any, Sequence

import wasmtime

from wasmbridge.errors import (
    ArgumentError,
    MailboxClosed,
    PoisonedResource,
    UnsupportedResultKind,
    WasmBridgeError,
)
from wasmbridge.mailbox import (
    CallResult,
    REASON_ARGUMENT_ERROR,
    REASON_EXPORT_NOT_FOUND,
    REASON_POISONED_RESOURCE,
    REASON_TRAP_OR_HOST_ERROR,
    REASON_UNSUPPORTED_RESULT_KIND,
)
from wasmbridge.resources import InstanceResource, StoreResource
from wasmbridge.values import NUMERIC_KINDS, decode_arguments, encode_results, from_guest, kind_of, to_guest

logger = logging.getLogger(__name__)


def _raw_results(raw, count: int) -> list:
    # wasmtime returns None, a single value, or a list depending on arity
    if count == 0:
        return []
    if count == 1:
        return [raw]
    return list(raw)


class ExecutionDispatcher:
    """
    Spawns one worker thread per export call. The worker holds the store lock
    for the whole call, so calls into the same store run one after another.
    """
    def __init__(self, thread_name_prefix: str = 'wasm-call', monitor=None):
        self.thread_name_prefix = thread_name_prefix
        self.monitor = monitor
        self._thread_ids = itertools.count(1)
        self._lock = threading.Lock()
        self.active_calls = 0

    def invoke_export(self, store: StoreResource, instance: InstanceResource, name: str,
                      params: Sequence, correlation_id: Any, reply_to) -> str:
        """
        Start calling `name` and return at once. The outcome arrives in
        `reply_to` as a CallResult tagged with `correlation_id`.
        """
        thread = threading.Thread(
            target=self._run,
            args=(store, instance, name, list(params), correlation_id, reply_to),
            name=f"{self.thread_name_prefix}-{next(self._thread_ids)}",
            daemon=True,
        )
        with self._lock:
            self.active_calls += 1
        thread.start()
        logger.debug(f"Dispatched {name}{tuple(params)} on {thread.name}")
        return 'ok'

    def _run(self, store, instance, name, params, correlation_id, reply_to):
        started = time.monotonic()
        try:
            result = self.execute(store, instance, name, params, correlation_id)
        except Exception as e:
            logger.error(f"Unexpected error while calling {name}: {type(e).__name__}: {e}")
            result = CallResult.failure(correlation_id, REASON_TRAP_OR_HOST_ERROR,
                                        f"internal error: {type(e).__name__}: {e}")
        finally:
            with self._lock:
                self.active_calls -= 1

        if self.monitor:
            self.monitor.record_call('ok' if result.ok else result.reason, time.monotonic() - started)
            self.monitor.update()
        try:
            reply_to.deliver(result)
        except MailboxClosed:
            logger.info(f"Result of {name} dropped, its mailbox is closed")
        except Exception as e:
            logger.error(f"Could not deliver result of {name} (correlation id {correlation_id!r}): {e}")

    def execute(self, store: StoreResource, instance: InstanceResource, name: str,
                params: Sequence, correlation_id: Any) -> CallResult:
        """Perform the call on the current thread and build its CallResult."""
        try:
            with store.guard.hold(), instance.guard.hold():
                wasm_store = store.store
                function = instance.find_function(name)
                if function is None:
                    return CallResult.failure(correlation_id, REASON_EXPORT_NOT_FOUND,
                                              f"exported function `{name}` not found")

                func_type = function.type(wasm_store)
                param_kinds = [kind_of(t) for t in func_type.params]
                result_kinds = [kind_of(t) for t in func_type.results]
                unsupported = [k for k in result_kinds if k not in NUMERIC_KINDS]

                try:
                    args = to_guest(decode_arguments(param_kinds, list(params)))
                except ArgumentError as e:
                    return CallResult.failure(correlation_id, REASON_ARGUMENT_ERROR, str(e))

                # wasmtime aborts the process when handing out v128 results
                if unsupported:
                    return CallResult.failure(correlation_id, REASON_UNSUPPORTED_RESULT_KIND,
                                              f"unable to return {unsupported[0]} type")

                try:
                    raw = function(wasm_store, *args)
                except (wasmtime.Trap, wasmtime.WasmtimeError, WasmBridgeError) as e:
                    logger.warning(f"Call to {name} trapped: {e}")
                    return CallResult.failure(correlation_id, REASON_TRAP_OR_HOST_ERROR,
                                              f"Error during function excecution: `{e}`.")
        except PoisonedResource as e:
            return CallResult.failure(correlation_id, REASON_POISONED_RESOURCE, str(e))

        try:
            results = encode_results(from_guest(result_kinds, _raw_results(raw, len(result_kinds))))
        except UnsupportedResultKind as e:
            return CallResult.failure(correlation_id, REASON_UNSUPPORTED_RESULT_KIND, str(e))
        return CallResult.success(correlation_id, results)
