"""
End to end tests: guest code calling back into Python through an
InstanceProcess.
"""
import asyncio

import pytest

from wasmbridge.errors import (
    ArgumentError,
    ExportNotFound,
    LinkError,
    TrapOrHostError,
    WasmBridgeError,
)
from wasmbridge.linker import HostFunction
from wasmbridge.process import InstanceProcess
from wasmbridge.runtime import WASMRuntime

CALLBACK_WAT = """
(module
  (import "host" "double" (func $double (param i32) (result i32)))
  (import "host" "greet" (func $greet (param i32 i32)))
  (import "host" "missing" (func $missing))
  (memory (export "memory") 1)
  (global $seen (export "seen") (mut i32) (i32.const 0))
  (data (i32.const 16) "hello")
  (func (export "double_it") (param i32) (result i32)
    local.get 0
    call $double)
  (func (export "quadruple") (param i32) (result i32)
    local.get 0
    call $double
    call $double)
  (func (export "greet") (result i32)
    i32.const 16
    i32.const 5
    call $greet
    global.get $seen)
  (func (export "call_missing")
    call $missing))
"""

START_WAT = """
(module
  (import "host" "ready" (func $ready (param i32)))
  (func $start
    i32.const 7
    call $ready)
  (start $start))
"""


BLOCKING_WAT = """
(module
  (import "host" "block" (func $block))
  (global $g (mut i32) (i32.const 0))
  (func (export "slow") (result i32)
    i32.const 1
    global.set $g
    call $block
    i32.const 2
    global.set $g
    global.get $g)
  (func (export "read") (result i32)
    global.get $g))
"""


@pytest.fixture
def runtime():
    return WASMRuntime()


def double(ctx, value):
    return value * 2


def greet(ctx, offset, length):
    assert ctx.read_memory(offset, length) == b'hello'
    ctx.write_memory(offset, b'HELLO')
    ctx.set_global('seen', length)


def imports(**overrides):
    table = {
        'host': {
            'double': (['i32'], ['i32'], double),
            'greet': ('fn', ['i32', 'i32'], [], greet),
        }
    }
    table['host'].update(overrides)
    return table


class TestInstanceProcess:
    @pytest.mark.asyncio
    async def test_callback(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        try:
            assert await process.call_function('double_it', [21]) == [42]
            assert await process.call_function('quadruple', [3]) == [12]
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_async_callback(self, runtime):
        async def slow_double(ctx, value):
            await asyncio.sleep(0.01)
            return [value * 2]

        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT),
                                  imports(double=HostFunction(['i32'], ['i32'], slow_double)))
        await process.start()
        try:
            assert await process.call_function('double_it', [5]) == [10]
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_callback_reaches_guest_state(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        try:
            assert await process.call_function('greet') == [5]
            assert await process.read_memory(16, 5) == b'HELLO'
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_raising_callback_traps(self, runtime):
        def broken(ctx, value):
            raise RuntimeError("no")

        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports(double=(['i32'], ['i32'], broken)))
        await process.start()
        try:
            with pytest.raises(TrapOrHostError):
                await process.call_function('double_it', [1])
            # the store stays usable
            assert await process.call_function('greet') == [5]
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_wrong_callback_result_traps(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT),
                                  imports(double=(['i32'], ['i32'], lambda ctx, value: 'x')))
        await process.start()
        try:
            with pytest.raises(TrapOrHostError):
                await process.call_function('double_it', [1])
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_unresolved_import_traps(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        try:
            with pytest.raises(TrapOrHostError, match="host.missing"):
                await process.call_function('call_missing')
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_errors(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        try:
            with pytest.raises(ExportNotFound):
                await process.call_function('triple', [1])
            with pytest.raises(ArgumentError):
                await process.call_function('double_it', [1, 2])
            assert await process.function_exists('double_it')
            assert not await process.function_exists('memory')
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_memory(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        try:
            assert await process.grow_memory(1) == 1
            await process.write_memory(70000, b'\x01\x02')
            assert await process.read_memory(70000, 2) == b'\x01\x02'
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_start_function_calls_back(self, runtime):
        seen = []
        process = InstanceProcess(runtime, runtime.compile(START_WAT),
                                  {'host': {'ready': (['i32'], [], lambda ctx, value: seen.append(value))}})
        await process.start()
        await process.stop()
        assert seen == [7]

    @pytest.mark.asyncio
    async def test_bad_import_signature(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT),
                                  imports(double=(['i64'], ['i32'], double)))
        with pytest.raises(LinkError):
            await process.start()
        assert not process.running

    @pytest.mark.asyncio
    async def test_stop_releases_resources(self, runtime):
        process = InstanceProcess(runtime, runtime.compile(CALLBACK_WAT), imports())
        await process.start()
        await process.read_memory(0, 1)
        store, instance = process.store, process.instance
        await process.stop()
        assert store not in runtime.registry
        assert instance not in runtime.registry


async def wait_until(condition, timeout=5):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        assert asyncio.get_running_loop().time() < deadline
        await asyncio.sleep(0.01)


class TestBlockedCalls:
    @pytest.mark.asyncio
    async def test_calls_wait_for_a_blocked_store(self, runtime):
        released = asyncio.Event()

        async def block(ctx):
            await released.wait()

        process = InstanceProcess(runtime, runtime.compile(BLOCKING_WAT),
                                  {'host': {'block': ([], [], block)}})
        await process.start()
        try:
            slow = asyncio.create_task(process.call_function('slow', [], timeout=5))
            await wait_until(lambda: len(runtime.bridge) == 1)
            read = asyncio.create_task(process.call_function('read', [], timeout=5))
            await asyncio.sleep(0.1)
            # the second call must not observe the state in between
            assert not read.done()
            assert process.store.guard.locked()

            released.set()
            assert await slow == [2]
            assert await read == [2]
        finally:
            await process.stop()

    @pytest.mark.asyncio
    async def test_stop_releases_a_worker_inside_a_callback(self, runtime):
        async def block(ctx):
            await asyncio.sleep(3600)

        process = InstanceProcess(runtime, runtime.compile(BLOCKING_WAT),
                                  {'host': {'block': ([], [], block)}})
        await process.start()
        store = process.store
        call = asyncio.create_task(process.call_function('slow', []))
        await wait_until(lambda: len(runtime.bridge) == 1)

        await process.stop()
        with pytest.raises(WasmBridgeError):
            await call
        await wait_until(lambda: runtime.dispatcher.active_calls == 0)
        assert len(runtime.bridge) == 0
        assert not store.guard.locked()
