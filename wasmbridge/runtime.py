"""
The runtime facade: everything the embedding side can do with modules,
stores, instances, memories and pending callbacks.
"""
import hashlib
import logging
import threading
from typing import Any, Optional, Sequence, Union

import wasmtime

from wasmbridge import linker
from wasmbridge.bridge import CallbackBridge
from wasmbridge.config import Config
from wasmbridge.dispatcher import ExecutionDispatcher
from wasmbridge.module import ModuleResource
from wasmbridge.monitoring import Monitor
from wasmbridge.resources import (
    InstanceResource,
    MemoryResource,
    PlainStore,
    ResourceRegistry,
    StoreResource,
    WasiStore,
)
from wasmbridge.wasi import WasiOptions

logger = logging.getLogger(__name__)

Ref = Union[int, Any]


class WASMRuntime:
    """
    Owns one engine, the resource registry, the callback bridge and the
    dispatcher. Methods accept resources either as objects or as the opaque
    integer handles the registry handed out.
    """
    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config.default()
        self.engine = wasmtime.Engine(self.config.engine.build())
        self.registry = ResourceRegistry()
        # compiled code shared by every module resource made from the same bytes
        self.module_cache: dict[bytes, wasmtime.Module] = {}
        self._module_refs: dict[bytes, int] = {}
        self._cache_lock = threading.Lock()

        self.monitor = None
        if self.config.monitoring.enabled:
            self.monitor = Monitor(self.config.monitoring.host, self.config.monitoring.port)
            self.monitor.start_server()

        self.bridge = CallbackBridge(reply_timeout=self.config.bridge.reply_timeout,
                                     monitor=self.monitor)
        self.dispatcher = ExecutionDispatcher(thread_name_prefix=self.config.dispatcher.thread_name_prefix,
                                              monitor=self.monitor)

    # Modules

    def compile(self, wasm_bytes: Union[bytes, str]) -> ModuleResource:
        """
        Compile guest code into a new module resource. Identical bytes reuse
        one compilation, but every call gets a handle of its own.
        """
        raw = wasm_bytes.encode('utf-8') if isinstance(wasm_bytes, str) else bytes(wasm_bytes)
        digest = hashlib.sha256(raw).digest()
        with self._cache_lock:
            compiled = self.module_cache.get(digest)
        if compiled is None:
            compiled = ModuleResource.compile(self.engine, wasm_bytes).module
            logger.info(f"Compiled module ({len(raw)} bytes)")
        with self._cache_lock:
            compiled = self.module_cache.setdefault(digest, compiled)
            self._module_refs[digest] = self._module_refs.get(digest, 0) + 1

        module = ModuleResource(compiled, self.engine)
        module.digest = digest
        self.registry.register(module)
        logger.debug(f"Registered module {module.handle}")
        return module

    def deserialize_unsafe(self, data: bytes) -> ModuleResource:
        """Load a serialized module. The bytes are trusted, see ModuleResource.deserialize_unsafe."""
        module = ModuleResource.deserialize_unsafe(self.engine, data)
        self.registry.register(module)
        logger.info(f"Deserialized module {module.handle} ({len(data)} bytes)")
        return module

    def serialize(self, module: Ref) -> bytes:
        return self.registry.resolve(module, ModuleResource).serialize()

    def exports(self, module: Ref) -> dict:
        return self.registry.resolve(module, ModuleResource).exports()

    def imports(self, module: Ref) -> dict:
        return self.registry.resolve(module, ModuleResource).imports()

    # Stores and instances

    def new_store(self, wasi: Optional[WasiOptions] = None) -> StoreResource:
        """A plain store, or a store with a system interface when `wasi` is given."""
        store = PlainStore(self.engine) if wasi is None else WasiStore(self.engine, wasi)
        self.registry.register(store)
        logger.info(f"Created {store.variant} store {store.handle}")
        return store

    def new_instance(self, store: Ref, module: Ref, imports: Optional[dict], callback_target) -> InstanceResource:
        """Link `module` into `store`; host imports report to `callback_target`."""
        store = self.registry.resolve(store, StoreResource)
        module = self.registry.resolve(module, ModuleResource)
        instance = linker.link(store, module, imports, self.bridge, callback_target)
        self.registry.register(instance)
        return instance

    def function_export_exists(self, instance: Ref, name: str) -> bool:
        return self.registry.resolve(instance, InstanceResource).function_export_exists(name)

    def call_function(self, instance: Ref, name: str, params: Sequence,
                      correlation_id: Any, reply_to) -> str:
        """Asynchronously call an export; the CallResult goes to `reply_to`."""
        instance = self.registry.resolve(instance, InstanceResource)
        return self.dispatcher.invoke_export(instance.store, instance, name, params,
                                             correlation_id, reply_to)

    def receive_callback_result(self, token: int, success: bool, results: Optional[Sequence] = None) -> str:
        return self.bridge.submit_reply(token, success, results)

    # Memories

    def memory(self, instance: Ref, name: Optional[str] = None) -> MemoryResource:
        memory = self.registry.resolve(instance, InstanceResource).memory(name)
        self.registry.register(memory)
        return memory

    def memory_size(self, memory: Ref) -> int:
        memory = self.registry.resolve(memory, MemoryResource)
        return memory.size(memory.store)

    def memory_data_size(self, memory: Ref) -> int:
        memory = self.registry.resolve(memory, MemoryResource)
        return memory.data_size(memory.store)

    def memory_grow(self, memory: Ref, pages: int) -> int:
        memory = self.registry.resolve(memory, MemoryResource)
        return memory.grow(memory.store, pages)

    def memory_read(self, memory: Ref, offset: int, length: int) -> bytes:
        memory = self.registry.resolve(memory, MemoryResource)
        return memory.read(memory.store, offset, length)

    def memory_write(self, memory: Ref, offset: int, data: bytes):
        memory = self.registry.resolve(memory, MemoryResource)
        memory.write(memory.store, offset, data)

    def release(self, ref: Ref):
        """Drop the registry's reference to a resource."""
        resource = self.registry.resolve(ref)
        self.registry.release(resource)
        if isinstance(resource, ModuleResource) and resource.digest is not None:
            self._forget_compilation(resource.digest)

    def _forget_compilation(self, digest: bytes):
        with self._cache_lock:
            refs = self._module_refs.get(digest, 0) - 1
            if refs > 0:
                self._module_refs[digest] = refs
                return
            self._module_refs.pop(digest, None)
            self.module_cache.pop(digest, None)
        logger.debug(f"Dropped cached compilation {digest.hex()[:12]}")

    def close(self):
        if self.monitor:
            self.monitor.stop_server()
