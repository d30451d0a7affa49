"""
Conversion between WebAssembly values and host (Python) values.

Floats cross the guest boundary as raw bit patterns so that a value survives
a host -> guest -> host trip bit-exact.
"""
import math
import struct
from dataclasses import dataclass
from typing import Any, Sequence

import wasmtime

from wasmbridge.errors import ArityMismatch, ArgumentTypeMismatch, UnsupportedResultKind

I32 = 'i32'
I64 = 'i64'
F32 = 'f32'
F64 = 'f64'
V128 = 'v128'
EXTERNREF = 'externref'
FUNCREF = 'funcref'

NUMERIC_KINDS = (I32, I64, F32, F64)
REFERENCE_KINDS = (EXTERNREF, FUNCREF)

_INT_RANGES = {
    I32: (-2**31, 2**31 - 1),
    I64: (-2**63, 2**63 - 1),
}

_VALTYPE_FACTORIES = {
    I32: wasmtime.ValType.i32,
    I64: wasmtime.ValType.i64,
    F32: wasmtime.ValType.f32,
    F64: wasmtime.ValType.f64,
    EXTERNREF: wasmtime.ValType.externref,
    FUNCREF: wasmtime.ValType.funcref,
}


def f32_to_bits(value: float) -> int:
    return struct.unpack('<I', struct.pack('<f', value))[0]


def bits_to_f32(bits: int) -> float:
    return struct.unpack('<f', struct.pack('<I', bits))[0]


def f64_to_bits(value: float) -> int:
    return struct.unpack('<Q', struct.pack('<d', value))[0]


def bits_to_f64(bits: int) -> float:
    return struct.unpack('<d', struct.pack('<Q', bits))[0]


@dataclass(frozen=True)
class WasmValue:
    """A typed guest value. `raw` holds integers as-is and floats as bits."""
    kind: str
    raw: Any

    @classmethod
    def i32(cls, value: int) -> 'WasmValue':
        return cls(I32, value)

    @classmethod
    def i64(cls, value: int) -> 'WasmValue':
        return cls(I64, value)

    @classmethod
    def f32(cls, value: float) -> 'WasmValue':
        return cls(F32, f32_to_bits(value))

    @classmethod
    def f64(cls, value: float) -> 'WasmValue':
        return cls(F64, f64_to_bits(value))

    @property
    def value(self):
        """The host representation of this value."""
        if self.kind in (I32, I64):
            return self.raw
        if self.kind == F32:
            return bits_to_f32(self.raw)
        if self.kind == F64:
            return bits_to_f64(self.raw)
        raise UnsupportedResultKind(f"unable to return {self.kind} type")


def kind_of(valtype: wasmtime.ValType) -> str:
    """Name of a wasmtime value type."""
    # printed names differ between wasmtime releases (externref prints as anyref)
    for kind, factory in _VALTYPE_FACTORIES.items():
        if valtype == factory():
            return kind
    # the only core value type without a factory
    return V128


def valtype_of(kind: str) -> wasmtime.ValType:
    try:
        return _VALTYPE_FACTORIES[kind]()
    except KeyError:
        raise ValueError(f"Unsupported WebAssembly value type: {kind!r}") from None


def _decode_int(nth: int, kind: str, given) -> WasmValue:
    # bool is an int subclass but not an integral host value here
    if isinstance(given, bool) or not isinstance(given, int):
        raise ArgumentTypeMismatch(nth, kind, given)
    low, high = _INT_RANGES[kind]
    if not low <= given <= high:
        raise ArgumentTypeMismatch(nth, kind)
    return WasmValue(kind, given)


def _decode_float(nth: int, kind: str, given, strict: bool) -> WasmValue:
    if isinstance(given, bool) or not isinstance(given, (int, float)):
        raise ArgumentTypeMismatch(nth, kind, given)
    try:
        value = float(given)
    except OverflowError:
        raise ArgumentTypeMismatch(nth, kind) from None

    if kind == F64:
        return WasmValue(F64, f64_to_bits(value))

    if strict and not math.isfinite(value):
        raise ArgumentTypeMismatch(nth, kind)
    try:
        return WasmValue(F32, f32_to_bits(value))
    except OverflowError:
        # finite double outside the f32 range
        if strict:
            raise ArgumentTypeMismatch(nth, kind) from None
        return WasmValue(F32, f32_to_bits(math.copysign(math.inf, value)))


def decode_arguments(expected_types: Sequence[str], provided_values: Sequence,
                     strict_floats: bool = True) -> list[WasmValue]:
    """
    Decode host values against a list of expected kinds.

    The arity is checked before any value. With `strict_floats` (arguments
    going into the guest) non-finite f32 values are rejected; callback results
    are decoded with `strict_floats=False`.

    Raises:
        ArityMismatch: if the number of values differs from the signature.
        ArgumentTypeMismatch: for the first value (1-based index) that can
            not be converted.
    """
    if len(expected_types) != len(provided_values):
        raise ArityMismatch(len(expected_types), len(provided_values))

    values = []
    for nth, (kind, given) in enumerate(zip(expected_types, provided_values), start=1):
        if kind in (I32, I64):
            values.append(_decode_int(nth, kind, given))
        elif kind in (F32, F64):
            values.append(_decode_float(nth, kind, given, strict_floats))
        else:
            raise ArgumentTypeMismatch(nth, kind, given)
    return values


def encode_results(values: Sequence[WasmValue]) -> list:
    """Convert guest values to host values, failing on any non-numeric kind."""
    results = []
    for value in values:
        if value.kind not in NUMERIC_KINDS:
            raise UnsupportedResultKind(f"unable to return {value.kind} type")
        results.append(value.value)
    return results


def from_guest(kinds: Sequence[str], raw_values: Sequence) -> list[WasmValue]:
    """Wrap values produced by wasmtime (ints and Python floats)."""
    values = []
    for kind, raw in zip(kinds, raw_values):
        if kind == F32:
            values.append(WasmValue(F32, f32_to_bits(raw)))
        elif kind == F64:
            values.append(WasmValue(F64, f64_to_bits(raw)))
        else:
            values.append(WasmValue(kind, raw))
    return values


def to_guest(values: Sequence[WasmValue]) -> list:
    """Raw Python values accepted by wasmtime calls."""
    return [value.value for value in values]
