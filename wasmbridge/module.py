"""
Compiled guest modules and their structured import/export descriptions.
"""
import logging
from typing import Optional, Union

import wasmtime

from wasmbridge.errors import CompileError, DeserializeError
from wasmbridge.resources import Resource
from wasmbridge.values import kind_of

logger = logging.getLogger(__name__)


def describe(extern_type) -> dict:
    """Describe an import or export type as plain host values."""
    if isinstance(extern_type, wasmtime.FuncType):
        return {
            'kind': 'function',
            'params': [kind_of(t) for t in extern_type.params],
            'results': [kind_of(t) for t in extern_type.results],
        }
    if isinstance(extern_type, wasmtime.GlobalType):
        return {
            'kind': 'global',
            'type': kind_of(extern_type.content),
            'mutability': 'var' if extern_type.mutable else 'const',
        }
    if isinstance(extern_type, wasmtime.TableType):
        info = {'kind': 'table', 'type': kind_of(extern_type.element)}
        info.update(_limits(extern_type.limits))
        return info
    if isinstance(extern_type, wasmtime.MemoryType):
        info = {'kind': 'memory'}
        info.update(_limits(extern_type.limits))
        info['shared'] = False
        return info
    raise TypeError(f"Unknown extern type: {extern_type!r}")


def _limits(limits) -> dict:
    info = {'minimum': limits.min}
    if limits.max is not None:
        info['maximum'] = limits.max
    return info


class ModuleResource(Resource):
    """Immutable compiled module."""
    kind = 'module'

    def __init__(self, module: wasmtime.Module, engine: wasmtime.Engine):
        super().__init__()
        self.module = module
        self.engine = engine
        # key of the shared compilation in the runtime cache
        self.digest: Optional[bytes] = None

    @classmethod
    def compile(cls, engine: wasmtime.Engine, wasm_bytes: Union[bytes, str]) -> 'ModuleResource':
        try:
            module = wasmtime.Module(engine, wasm_bytes)
        except wasmtime.WasmtimeError as e:
            raise CompileError(f"Could not compile module: {e}") from e
        return cls(module, engine)

    @classmethod
    def deserialize_unsafe(cls, engine: wasmtime.Engine, data: bytes) -> 'ModuleResource':
        """
        Load a module from `serialize()` output.

        The bytes are trusted to encode valid executable code, nothing is
        re-validated. Never pass bytes from an untrusted source.
        """
        try:
            module = wasmtime.Module.deserialize(engine, data)
        except wasmtime.WasmtimeError as e:
            raise DeserializeError(f"Could not deserialize module: {e}") from e
        return cls(module, engine)

    def serialize(self) -> bytes:
        with self.guard.hold():
            return bytes(self.module.serialize())

    def exports(self) -> dict:
        """{export_name: description} in declaration order."""
        with self.guard.hold():
            return {export.name: describe(export.type) for export in self.module.exports}

    def imports(self) -> dict:
        """{namespace: {import_name: description}}."""
        namespaces = {}
        with self.guard.hold():
            for imp in self.module.imports:
                namespaces.setdefault(imp.module, {})[imp.name or ''] = describe(imp.type)
        return namespaces

    def function_imports(self) -> list[tuple[str, str, wasmtime.FuncType]]:
        with self.guard.hold():
            return [
                (imp.module, imp.name or '', imp.type)
                for imp in self.module.imports
                if isinstance(imp.type, wasmtime.FuncType)
            ]
