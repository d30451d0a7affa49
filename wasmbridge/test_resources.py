"""
Tests for resource guards, the registry and memory access.
"""
import unittest

from wasmbridge.errors import (
    ArgumentError,
    OutOfBounds,
    PoisonedResource,
    ResourceNotFound,
    StoreMismatch,
    WasmBridgeError,
)
from wasmbridge.module import ModuleResource
from wasmbridge.resources import WASM_PAGE_SIZE, Guard, PlainStore, ResourceRegistry, StoreResource
from wasmbridge.runtime import WASMRuntime

MEMORY_WAT = """
(module
  (memory (export "memory") 1 8)
  (func (export "noop")))
"""

NO_MEMORY_WAT = """
(module
  (func (export "noop")))
"""


class TestGuard(unittest.TestCase):
    def test_unexpected_exception_poisons(self):
        guard = Guard('store')
        with self.assertRaises(RuntimeError):
            with guard.hold():
                raise RuntimeError("boom")
        self.assertTrue(guard.poisoned)
        with self.assertRaises(PoisonedResource) as ctx:
            with guard.hold():
                pass
        self.assertEqual(str(ctx.exception),
                         "Could not unlock store resource as the mutex was poisoned")

    def test_bridge_errors_do_not_poison(self):
        guard = Guard('memory')
        with self.assertRaises(WasmBridgeError):
            with guard.hold():
                raise OutOfBounds("nope")
        self.assertFalse(guard.poisoned)
        with guard.hold():
            self.assertTrue(guard.locked())
        self.assertFalse(guard.locked())


class TestRegistry(unittest.TestCase):
    def setUp(self):
        self.runtime = WASMRuntime()
        self.registry = self.runtime.registry

    def test_handles_are_unique(self):
        a = self.runtime.new_store()
        b = self.runtime.new_store()
        self.assertNotEqual(a.handle, b.handle)
        self.assertIs(self.registry.resolve(a.handle, StoreResource), a)

    def test_wrong_type(self):
        store = self.runtime.new_store()
        with self.assertRaises(ResourceNotFound):
            self.registry.resolve(store.handle, ModuleResource)

    def test_released_handle(self):
        store = self.runtime.new_store()
        self.runtime.release(store)
        self.assertNotIn(store, self.registry)
        with self.assertRaises(ResourceNotFound):
            self.registry.resolve(store.handle)
        with self.assertRaises(ResourceNotFound):
            self.registry.release(store.handle)

    def test_handles_are_not_reused(self):
        registry = ResourceRegistry()
        store = PlainStore(self.runtime.engine)
        first = registry.register(store)
        registry.release(first)
        self.assertNotEqual(registry.register(store), first)
        self.assertEqual(len(registry), 1)

    def test_compile_cache(self):
        a = self.runtime.compile(MEMORY_WAT)
        b = self.runtime.compile(MEMORY_WAT)
        self.assertNotEqual(a.handle, b.handle)
        self.assertIs(a.module, b.module)
        self.assertEqual(len(self.runtime.module_cache), 1)

        self.runtime.release(a)
        self.assertIn('noop', self.runtime.exports(b))
        self.assertEqual(len(self.runtime.module_cache), 1)

        self.runtime.release(b)
        self.assertEqual(self.runtime.module_cache, {})
        self.assertIsNot(self.runtime.compile(MEMORY_WAT).module, a.module)


class TestMemory(unittest.TestCase):
    def setUp(self):
        self.runtime = WASMRuntime()
        self.module = self.runtime.compile(MEMORY_WAT)
        self.store = self.runtime.new_store()
        self.instance = self.runtime.new_instance(self.store, self.module, None, None)
        self.memory = self.runtime.memory(self.instance)

    def test_sizes(self):
        self.assertEqual(self.runtime.memory_size(self.memory), 1)
        self.assertEqual(self.runtime.memory_data_size(self.memory), WASM_PAGE_SIZE)

    def test_grow_returns_previous_size(self):
        self.assertEqual(self.runtime.memory_grow(self.memory, 2), 1)
        self.assertEqual(self.runtime.memory_size(self.memory), 3)

    def test_grow_beyond_maximum(self):
        with self.assertRaises(OutOfBounds):
            self.runtime.memory_grow(self.memory, 8)
        self.assertEqual(self.runtime.memory_size(self.memory), 1)

    def test_grow_negative(self):
        with self.assertRaises(ArgumentError):
            self.runtime.memory_grow(self.memory, -1)

    def test_read_write(self):
        self.runtime.memory_write(self.memory, 100, b'hello')
        self.assertEqual(self.runtime.memory_read(self.memory, 100, 5), b'hello')
        self.assertEqual(self.memory.get_byte(self.store, 101), ord('e'))
        self.memory.set_byte(self.store, 101, ord('a'))
        self.assertEqual(self.runtime.memory_read(self.memory, 100, 5), b'hallo')

    def test_out_of_bounds_write_is_not_partial(self):
        with self.assertRaises(OutOfBounds):
            self.runtime.memory_write(self.memory, WASM_PAGE_SIZE - 2, b'abcd')
        self.assertEqual(self.runtime.memory_read(self.memory, WASM_PAGE_SIZE - 2, 2), b'\x00\x00')

    def test_out_of_bounds_read(self):
        with self.assertRaises(OutOfBounds):
            self.runtime.memory_read(self.memory, WASM_PAGE_SIZE, 1)

    def test_set_byte_range(self):
        with self.assertRaises(ArgumentError):
            self.memory.set_byte(self.store, 0, 256)

    def test_other_store(self):
        other = self.runtime.new_store()
        with self.assertRaises(StoreMismatch):
            self.memory.read(other, 0, 1)

    def test_instance_without_memory(self):
        module = self.runtime.compile(NO_MEMORY_WAT)
        instance = self.runtime.new_instance(self.runtime.new_store(), module, None, None)
        with self.assertRaises(ResourceNotFound):
            self.runtime.memory(instance)
        with self.assertRaises(ResourceNotFound):
            self.runtime.memory(self.instance, 'heap')


if __name__ == '__main__':
    unittest.main()
