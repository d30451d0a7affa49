"""
Resource ownership: guarded handles for stores, instances and memories, and
the registry that hands out opaque handles for them.
"""
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Union

import wasmtime

from wasmbridge.errors import (
    ArgumentError,
    OutOfBounds,
    PoisonedResource,
    ResourceNotFound,
    StoreMismatch,
    WasmBridgeError,
)

logger = logging.getLogger(__name__)

WASM_PAGE_SIZE = 65536


class Guard:
    """
    A mutex that poisons itself when a non-bridge exception escapes while it
    is held. A poisoned guard refuses every later acquisition.
    """
    def __init__(self, name: str):
        self.name = name
        self.poisoned = False
        self._lock = threading.Lock()

    @contextmanager
    def hold(self):
        with self._lock:
            if self.poisoned:
                raise PoisonedResource(
                    f"Could not unlock {self.name} resource as the mutex was poisoned"
                )
            try:
                yield
            except WasmBridgeError:
                raise
            except Exception as e:
                self.poisoned = True
                logger.error(f"{self.name} resource poisoned by {type(e).__name__}: {e}")
                raise

    def locked(self) -> bool:
        return self._lock.locked()


class Resource:
    kind = 'resource'

    def __init__(self):
        self.handle: Optional[int] = None
        self.guard = Guard(self.kind)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} handle={self.handle}>"


class StoreResource(Resource):
    """
    Mutable execution context. Subclasses are the store variants; each one
    knows how to prepare a linker for itself.
    """
    kind = 'store'
    variant = None

    def __init__(self, engine: wasmtime.Engine):
        super().__init__()
        # keeps the engine alive for as long as the store
        self.engine = engine
        self.store = wasmtime.Store(engine)

    def prepare_linker(self, linker: wasmtime.Linker):
        raise NotImplementedError

    @contextmanager
    def locked(self):
        """Hold the store lock and yield the wasmtime store."""
        with self.guard.hold():
            yield self.store


class PlainStore(StoreResource):
    variant = 'plain'

    def prepare_linker(self, linker: wasmtime.Linker):
        pass


class WasiStore(StoreResource):
    variant = 'wasi'

    def __init__(self, engine: wasmtime.Engine, options):
        super().__init__(engine)
        self.options = options
        self.store.set_wasi(options.build())

    def prepare_linker(self, linker: wasmtime.Linker):
        linker.define_wasi()


class InstanceResource(Resource):
    """A linked module inside a store. The store owns the guest state."""
    kind = 'instance'

    def __init__(self, store: StoreResource, instance: wasmtime.Instance, module):
        super().__init__()
        self.store = store
        self.instance = instance
        self.module = module

    def find_function(self, name: str) -> Optional[wasmtime.Func]:
        """Look up an exported function. The store lock must be held."""
        export = self.instance.exports(self.store.store).get(name)
        if isinstance(export, wasmtime.Func):
            return export
        return None

    def function_export_exists(self, name: str) -> bool:
        with self.store.guard.hold(), self.guard.hold():
            return self.find_function(name) is not None

    def memory(self, name: Optional[str] = None) -> 'MemoryResource':
        """
        The memory exported under `name`, or the first exported memory when
        no name is given.
        """
        with self.store.guard.hold(), self.guard.hold():
            exports = self.instance.exports(self.store.store)
            if name is not None:
                memory = exports.get(name)
                if not isinstance(memory, wasmtime.Memory):
                    raise ResourceNotFound(f"The WebAssembly module has no memory named `{name}`.")
            else:
                memory = next((e for e in exports if isinstance(e, wasmtime.Memory)), None)
                if memory is None:
                    raise ResourceNotFound("The WebAssembly module has no exported memory.")
        return MemoryResource(self.store, memory)


class MemoryResource(Resource):
    kind = 'memory'

    def __init__(self, store: StoreResource, memory: wasmtime.Memory):
        super().__init__()
        self.store = store
        self.memory = memory

    @contextmanager
    def _locked(self, store: StoreResource):
        if store is not self.store:
            raise StoreMismatch("memory does not belong to the given store")
        with store.guard.hold(), self.guard.hold():
            yield store.store

    def _check_bounds(self, wasm_store: wasmtime.Store, offset: int, length: int):
        data_len = self.memory.data_len(wasm_store)
        if offset < 0 or length < 0 or offset + length > data_len:
            raise OutOfBounds(
                f"access of {length} bytes at offset {offset} exceeds memory of {data_len} bytes"
            )

    def size(self, store: StoreResource) -> int:
        """Current size in pages."""
        with self._locked(store) as wasm_store:
            return self.memory.size(wasm_store)

    def data_size(self, store: StoreResource) -> int:
        """Current size in bytes."""
        with self._locked(store) as wasm_store:
            return self.memory.data_len(wasm_store)

    def grow(self, store: StoreResource, pages: int) -> int:
        """Grows the memory by `pages`. Returns the previous page count."""
        if pages < 0:
            raise ArgumentError("number of pages must not be negative")
        with self._locked(store) as wasm_store:
            try:
                return self.memory.grow(wasm_store, pages)
            except wasmtime.WasmtimeError as e:
                raise OutOfBounds(f"Failed to grow the memory: {e}.") from e

    def read(self, store: StoreResource, offset: int, length: int) -> bytes:
        with self._locked(store) as wasm_store:
            self._check_bounds(wasm_store, offset, length)
            return bytes(self.memory.read(wasm_store, offset, offset + length))

    def write(self, store: StoreResource, offset: int, data: bytes):
        with self._locked(store) as wasm_store:
            self._check_bounds(wasm_store, offset, len(data))
            self.memory.write(wasm_store, bytes(data), offset)

    def get_byte(self, store: StoreResource, offset: int) -> int:
        return self.read(store, offset, 1)[0]

    def set_byte(self, store: StoreResource, offset: int, value: int):
        if not 0 <= value <= 255:
            raise ArgumentError(f"byte value out of range: {value}")
        self.write(store, offset, bytes([value]))


class ResourceRegistry:
    """
    Owns every live resource and maps opaque integer handles to them.
    Handles are never reused.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._resources: dict[int, Resource] = {}
        self._handles = itertools.count(1)

    def register(self, resource: Resource) -> int:
        with self._lock:
            handle = next(self._handles)
            resource.handle = handle
            self._resources[handle] = resource
        logger.debug(f"Registered {resource.kind} resource {handle}")
        return handle

    def resolve(self, ref: Union[int, Resource], expected_type: type = Resource) -> Resource:
        """Return the live resource for a handle (or a resource object)."""
        handle = ref.handle if isinstance(ref, Resource) else ref
        with self._lock:
            resource = self._resources.get(handle)
        if resource is None:
            raise ResourceNotFound(f"no live resource for handle {handle}")
        if not isinstance(resource, expected_type):
            raise ResourceNotFound(
                f"handle {handle} is a {resource.kind}, expected {expected_type.kind}"
            )
        return resource

    def release(self, ref: Union[int, Resource]):
        handle = ref.handle if isinstance(ref, Resource) else ref
        with self._lock:
            resource = self._resources.pop(handle, None)
        if resource is None:
            raise ResourceNotFound(f"no live resource for handle {handle}")
        logger.debug(f"Released {resource.kind} resource {handle}")

    def __contains__(self, ref) -> bool:
        handle = ref.handle if isinstance(ref, Resource) else ref
        with self._lock:
            return handle in self._resources

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)
