"""
Error taxonomy for the WebAssembly bridge.
"""


class WasmBridgeError(Exception):
    """Base class for every error raised by wasmbridge."""
    pass


class CompileError(WasmBridgeError):
    pass


class DeserializeError(WasmBridgeError):
    pass


class LinkError(WasmBridgeError):
    pass


class ExportNotFound(WasmBridgeError):
    pass


class ArgumentError(WasmBridgeError):
    pass


class ArityMismatch(ArgumentError):
    def __init__(self, expected: int, given: int):
        super().__init__(
            f"number of params does not match. expected {expected}, got {given}"
        )
        self.expected = expected
        self.given = given


class ArgumentTypeMismatch(ArgumentError):
    """The argument at the 1-based `index` can not be converted."""

    def __init__(self, index: int, kind: str, given=None):
        message = f"Cannot convert argument #{index} to a WebAssembly {kind} value."
        if given is not None:
            message += f" Given `{type(given).__name__}`."
        super().__init__(message)
        self.index = index
        self.kind = kind


class UnsupportedResultKind(WasmBridgeError):
    pass


class TrapOrHostError(WasmBridgeError):
    pass


class PoisonedResource(WasmBridgeError):
    pass


class OutOfBounds(WasmBridgeError):
    pass


class ResourceNotFound(WasmBridgeError):
    pass


class StoreMismatch(WasmBridgeError):
    pass


class CallbackTokenError(WasmBridgeError):
    pass


class CallbackAborted(WasmBridgeError):
    """Raised inside a host import to trap the guest call."""
    pass


class CallbackTimeout(CallbackAborted):
    pass


class UnresolvedImport(WasmBridgeError):
    def __init__(self, namespace: str, name: str):
        super().__init__(f"unresolved import `{namespace}.{name}` was called")
        self.namespace = namespace
        self.name = name


class MailboxClosed(WasmBridgeError):
    pass
