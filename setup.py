# setup.py
from setuptools import setup, find_packages

setup(
    name="wasmbridge",
    version="0.1.0",
    packages=find_packages(include=["wasmbridge", "wasmbridge.*"]),
    install_requires=[
        "wasmtime",           # WASM runtime
        "msgpack",            # mailbox messages
        "psutil",             # monitoring
        "prometheus_client",  # metrics exposition
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "wasmbridge=wasmbridge.cli:main",
        ],
    },
)
