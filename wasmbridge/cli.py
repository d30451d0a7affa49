"""
Command line entry point: inspect a module or call one of its exports.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from wasmbridge.config import Config
from wasmbridge.errors import WasmBridgeError
from wasmbridge.process import InstanceProcess
from wasmbridge.runtime import WASMRuntime
from wasmbridge.wasi import Pipe, WasiOptions

logger = logging.getLogger(__name__)


def parse_number(text: str):
    """Command line arguments are integers when they look like one, floats otherwise."""
    try:
        return int(text, 0)
    except ValueError:
        return float(text)


def parse_env(pairs):
    env = {}
    for pair in pairs or []:
        key, sep, value = pair.partition('=')
        if not sep:
            raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def parse_preopen(entries):
    preopen = {}
    for entry in entries or []:
        host, _, alias = entry.partition(':')
        preopen[host] = {'alias': alias or host}
    return preopen


def read_module(path: str):
    path = Path(path)
    if path.suffix == '.wat':
        return path.read_text()
    return path.read_bytes()


def load_config(path) -> Config:
    if path and Path(path).exists():
        return Config.from_file(path)
    return Config.default()


def inspect_module(args) -> int:
    runtime = WASMRuntime(load_config(args.config))
    try:
        module = runtime.compile(read_module(args.file))
        print(json.dumps({
            'exports': runtime.exports(module),
            'imports': runtime.imports(module),
        }, indent=2))
    finally:
        runtime.close()
    return 0


async def run_function(args) -> int:
    runtime = WASMRuntime(load_config(args.config))
    stdout = None
    wasi = None
    if args.wasi:
        stdout = Pipe()
        wasi = WasiOptions(
            args=[args.file, *(args.arg or [])],
            env=parse_env(args.env),
            stdout=stdout,
            preopen=parse_preopen(args.preopen),
        )

    process = None
    try:
        module = runtime.compile(read_module(args.file))
        process = InstanceProcess(runtime, module, wasi=wasi)
        await process.start()
        results = await process.call_function(args.function, [parse_number(p) for p in args.params])
        print(json.dumps(results))
        if stdout is not None:
            sys.stdout.write(stdout.read())
    finally:
        if process:
            await process.stop()
        if stdout is not None:
            stdout.close()
        runtime.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run WebAssembly modules with host callbacks")
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--log-level', type=str, default='WARNING', help='Logging level')
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_inspect = subparsers.add_parser("inspect", help="Print the exports and imports of a module")
    parser_inspect.add_argument("file", type=str, help="Path to a .wasm or .wat file")

    parser_run = subparsers.add_parser("run", help="Call an exported function")
    parser_run.add_argument("file", type=str, help="Path to a .wasm or .wat file")
    parser_run.add_argument("function", type=str, help="Name of the exported function")
    parser_run.add_argument("params", nargs='*', help="Numeric arguments")
    parser_run.add_argument("--wasi", action='store_true', help="Link the system interface")
    parser_run.add_argument("--arg", action='append', help="Argument passed to the guest")
    parser_run.add_argument("--env", action='append', help="Environment variable (format: KEY=VALUE)")
    parser_run.add_argument("--preopen", action='append', help="Preopened directory (format: DIR[:ALIAS])")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "inspect":
            return inspect_module(args)
        return asyncio.run(run_function(args))
    except (WasmBridgeError, OSError, argparse.ArgumentTypeError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
