"""
Import linking: builds a module's import table so that every host import is
routed through the callback bridge.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import wasmtime

from wasmbridge.errors import LinkError, UnresolvedImport, WasmBridgeError
from wasmbridge.module import ModuleResource
from wasmbridge.resources import InstanceResource, StoreResource
from wasmbridge.values import NUMERIC_KINDS, valtype_of

logger = logging.getLogger(__name__)


@dataclass
class HostFunction:
    """
    One entry of an import table.

    `callback` is whatever the embedding runtime uses to compute the result;
    the linker only forwards invocations, it never calls it.
    """
    params: list
    results: list
    callback: Optional[Callable] = None

    @classmethod
    def coerce(cls, entry: Any) -> 'HostFunction':
        """Accepts a HostFunction, `(params, results, callback)` or `('fn', params, results, callback)`."""
        if isinstance(entry, HostFunction):
            return entry
        if isinstance(entry, (tuple, list)):
            if len(entry) == 4 and entry[0] == 'fn':
                entry = entry[1:]
            if len(entry) == 3:
                params, results, callback = entry
                return cls(list(params), list(results), callback)
        raise LinkError(f"Invalid import table entry: {entry!r}")

    def func_type(self) -> wasmtime.FuncType:
        for kind in (*self.params, *self.results):
            if kind not in NUMERIC_KINDS:
                raise LinkError(f"Unsupported import value type: {kind!r}")
        return wasmtime.FuncType(
            [valtype_of(kind) for kind in self.params],
            [valtype_of(kind) for kind in self.results],
        )


def normalize_imports(imports: Optional[dict]) -> dict[tuple[str, str], HostFunction]:
    """Flatten `{namespace: {name: entry}}` into `{(namespace, name): HostFunction}`."""
    entries = {}
    for namespace, functions in (imports or {}).items():
        for name, entry in functions.items():
            entries[(namespace, name)] = HostFunction.coerce(entry)
    return entries


def _trap_stub(namespace: str, name: str):
    def stub(*args):
        raise UnresolvedImport(namespace, name)
    return stub


def _bridged(bridge, target, namespace: str, name: str, host_function: HostFunction):
    params = list(host_function.params)
    results = list(host_function.results)

    def trampoline(caller, *raw_params):
        return bridge.invoke(caller, target, namespace, name, params, results, raw_params)
    return trampoline


def link(store: StoreResource, module: ModuleResource, imports: Optional[dict],
         bridge, target) -> InstanceResource:
    """
    Instantiate `module` inside `store`.

    Imports present in the table call into `bridge`, which sends callback
    requests to `target` (a Mailbox). Function imports missing from the table
    are bound to stubs that trap when executed. WASI stores get the default
    system interface first; table entries shadow it.
    """
    entries = normalize_imports(imports)
    func_types = {key: entry.func_type() for key, entry in entries.items()}
    unresolved = [(ns, name, ty) for ns, name, ty in module.function_imports() if (ns, name) not in entries]

    with store.guard.hold(), module.guard.hold():
        try:
            linker = wasmtime.Linker(store.engine)
            linker.allow_shadowing = True
            for namespace, name, func_type in unresolved:
                linker.define_func(namespace, name, func_type, _trap_stub(namespace, name))
            store.prepare_linker(linker)
            for (namespace, name), entry in entries.items():
                linker.define_func(
                    namespace, name, func_types[(namespace, name)],
                    _bridged(bridge, target, namespace, name, entry),
                    access_caller=True,
                )
            instance = linker.instantiate(store.store, module.module)
        except (wasmtime.WasmtimeError, wasmtime.Trap, WasmBridgeError) as e:
            # a start function may trap, possibly through a host import
            raise LinkError(f"Cannot instantiate: {e}") from e

    logger.info(f"Linked module {module.handle} into {store.variant} store {store.handle} "
                f"with {len(entries)} host imports")
    return InstanceResource(store, instance, module)
