"""
An asyncio process owning one instance: it receives callback requests and
call results from its mailbox, answers host imports with Python callables and
resolves pending export calls.
"""
import asyncio
import inspect
import itertools
import logging
from typing import Callable, Optional, Sequence

from wasmbridge.errors import CallbackTokenError, WasmBridgeError
from wasmbridge.linker import normalize_imports
from wasmbridge.mailbox import CallbackRequest, CallResult, Mailbox
from wasmbridge.wasi import WasiOptions

logger = logging.getLogger(__name__)


class CallbackContext:
    """Access to the suspended guest while a host callback is running."""
    def __init__(self, bridge, request: CallbackRequest):
        self.bridge = bridge
        self.token = request.token
        self.namespace = request.namespace
        self.name = request.name

    def read_memory(self, offset: int, length: int, memory_name: str = 'memory') -> bytes:
        return self.bridge.read_memory(self.token, offset, length, memory_name)

    def write_memory(self, offset: int, data: bytes, memory_name: str = 'memory'):
        self.bridge.write_memory(self.token, offset, data, memory_name)

    def get_global(self, name: str):
        return self.bridge.get_global(self.token, name)

    def set_global(self, name: str, value):
        self.bridge.set_global(self.token, name, value)


def _as_results(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class InstanceProcess:
    """
    Owns a store, an instance linked into it and the mailbox both report to.

    `imports` is an import table whose callbacks are called as
    `callback(ctx, *params)`; they may be plain functions or coroutines.
    """
    def __init__(self, runtime, module, imports: Optional[dict] = None,
                 wasi: Optional[WasiOptions] = None):
        self.runtime = runtime
        self.module = module
        self.imports = imports or {}
        self.wasi = wasi
        self.callbacks: dict[tuple[str, str], Optional[Callable]] = {
            key: entry.callback for key, entry in normalize_imports(self.imports).items()
        }

        self.mailbox: Optional[Mailbox] = None
        self.store = None
        self.instance = None
        self.running = False
        self._memory = None
        self._receiver: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._calls: dict[int, asyncio.Future] = {}
        self._correlation_ids = itertools.count(1)

    async def start(self):
        loop = asyncio.get_running_loop()
        self.mailbox = Mailbox(loop)
        self.store = self.runtime.new_store(self.wasi)
        # receive before linking, a start function may already call imports
        self._receiver = asyncio.create_task(self._receive_loop())
        self.running = True
        try:
            self.instance = await loop.run_in_executor(
                None, self.runtime.new_instance, self.store, self.module, self.imports, self.mailbox
            )
        except WasmBridgeError:
            await self.stop()
            raise
        logger.info(f"Instance process started with instance {self.instance.handle}")

    async def stop(self):
        if not self.running:
            return
        self.running = False

        # no new requests; workers delivering now abort their callback
        self.mailbox.close()
        if self._receiver:
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # requests that were queued but never handled
        self.runtime.bridge.abort_pending(self.mailbox)

        for future in self._calls.values():
            if not future.done():
                future.set_exception(WasmBridgeError("instance process stopped"))
        self._calls.clear()

        for resource in (self._memory, self.instance, self.store):
            if resource is not None and resource in self.runtime.registry:
                self.runtime.release(resource)
        logger.info("Instance process stopped")

    async def call_function(self, name: str, params: Sequence = (), timeout: Optional[float] = None) -> list:
        """
        Call an exported function and wait for its results.

        Raises the WasmBridgeError subclass matching a failed call.
        """
        if not self.running:
            raise WasmBridgeError("instance process is not running")
        correlation_id = next(self._correlation_ids)
        future = asyncio.get_running_loop().create_future()
        self._calls[correlation_id] = future
        try:
            self.runtime.call_function(self.instance, name, params, correlation_id, self.mailbox)
            result: CallResult = await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._calls.pop(correlation_id, None)
        result.raise_for_error()
        return result.results

    async def function_exists(self, name: str) -> bool:
        return await self._offload(self.runtime.function_export_exists, self.instance, name)

    async def memory(self):
        if self._memory is None:
            self._memory = await self._offload(self.runtime.memory, self.instance)
        return self._memory

    async def read_memory(self, offset: int, length: int) -> bytes:
        memory = await self.memory()
        return await self._offload(self.runtime.memory_read, memory, offset, length)

    async def write_memory(self, offset: int, data: bytes):
        memory = await self.memory()
        await self._offload(self.runtime.memory_write, memory, offset, data)

    async def grow_memory(self, pages: int) -> int:
        memory = await self.memory()
        return await self._offload(self.runtime.memory_grow, memory, pages)

    async def _offload(self, fn, *args):
        # store locks are held for the length of a guest call
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def _receive_loop(self):
        while True:
            message = await self.mailbox.receive()
            if isinstance(message, CallbackRequest):
                task = asyncio.create_task(self._handle_callback(message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif isinstance(message, CallResult):
                future = self._calls.get(message.correlation_id)
                if future is None or future.done():
                    logger.warning(f"Dropping result for unknown call {message.correlation_id!r}")
                    continue
                future.set_result(message)

    async def _handle_callback(self, request: CallbackRequest):
        callback = self.callbacks.get((request.namespace, request.name))
        logger.debug(f"Handling callback {request.token} for {request.namespace}.{request.name}")
        try:
            if callback is None:
                raise LookupError(f"no callback for {request.namespace}.{request.name}")
            result = callback(CallbackContext(self.runtime.bridge, request), *request.params)
            if inspect.isawaitable(result):
                result = await result
            success, results = True, _as_results(result)
        except asyncio.CancelledError:
            self._reply(request.token, False, [])
            raise
        except Exception as e:
            logger.warning(f"Callback {request.namespace}.{request.name} raised {type(e).__name__}: {e}")
            success, results = False, []
        self._reply(request.token, success, results)

    def _reply(self, token: int, success: bool, results: list):
        try:
            self.runtime.receive_callback_result(token, success, results)
        except CallbackTokenError as e:
            logger.warning(f"Reply to callback {token} rejected: {e}")
