"""
System interface (WASI) options for stores, and pipes usable as WASI stdio.
"""
import io
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Optional, Union

import wasmtime

logger = logging.getLogger(__name__)


class Pipe:
    """
    A byte buffer used to replace stdin/stdout/stderr of a WASI module.

    wasmtime only accepts stdio endpoints as file paths, so the buffer lives
    in a temporary file. Reading drains what has been read; seeking is not
    supported.

    Once a pipe is attached as stdout or stderr the guest writes it through
    its own file descriptor, and the host may only read it.
    """
    def __init__(self):
        fd, self.path = tempfile.mkstemp(prefix='wasmbridge-pipe-')
        os.close(fd)
        self._read_pos = 0
        self._lock = threading.Lock()
        self.guest_writable = False

    def _check_host_writable(self):
        if self.guest_writable:
            raise io.UnsupportedOperation("the guest writes this pipe, it is read-only for the host")

    def write(self, data: Union[bytes, str]) -> int:
        self._check_host_writable()
        if isinstance(data, str):
            data = data.encode('utf-8')
        with self._lock, open(self.path, 'ab') as f:
            f.write(data)
        return len(data)

    def read(self) -> str:
        with self._lock, open(self.path, 'rb') as f:
            f.seek(self._read_pos)
            data = f.read()
            self._read_pos += len(data)
        return data.decode('utf-8', errors='replace')

    def size(self) -> int:
        with self._lock:
            return os.path.getsize(self.path) - self._read_pos

    def set_len(self, length: int):
        self._check_host_writable()
        with self._lock:
            os.truncate(self.path, self._read_pos + length)

    def seek(self, *args):
        raise io.UnsupportedOperation("can not seek in a pipe")

    def close(self):
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __repr__(self) -> str:
        return f"<Pipe {self.path}>"


@dataclass
class WasiOptions:
    """
    Configuration of the system interface attached to a store.

    `preopen` maps host directory paths to options; the only option is
    `alias`, the path under which the guest sees the directory.
    """
    args: list = field(default_factory=list)
    env: dict = field(default_factory=dict)
    stdin: Optional[Pipe] = None
    stdout: Optional[Pipe] = None
    stderr: Optional[Pipe] = None
    preopen: dict = field(default_factory=dict)

    def build(self) -> wasmtime.WasiConfig:
        config = wasmtime.WasiConfig()
        config.argv = [str(arg) for arg in self.args]
        config.env = [(str(k), str(v)) for k, v in self.env.items()]
        if self.stdin is not None:
            config.stdin_file = self.stdin.path
        if self.stdout is not None:
            self.stdout.guest_writable = True
            config.stdout_file = self.stdout.path
        if self.stderr is not None:
            self.stderr.guest_writable = True
            config.stderr_file = self.stderr.path
        for host_path, opts in self.preopen.items():
            guest_path = (opts or {}).get('alias', host_path)
            if not os.path.isdir(host_path):
                raise FileNotFoundError(f"Cannot pre-open {host_path}: not a directory")
            config.preopen_dir(host_path, guest_path)
            logger.debug(f"Pre-opened {host_path} as {guest_path}")
        return config
