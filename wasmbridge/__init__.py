"""Host-callback bridge and execution scheduler for WebAssembly guests."""
from wasmbridge.config import Config
from wasmbridge.errors import WasmBridgeError
from wasmbridge.linker import HostFunction
from wasmbridge.process import CallbackContext, InstanceProcess
from wasmbridge.runtime import WASMRuntime
from wasmbridge.wasi import Pipe, WasiOptions

__version__ = "0.1.0"
