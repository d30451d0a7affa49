"""
Configuration management for the WebAssembly bridge.
"""
import json
import os
from typing import Optional
from dataclasses import dataclass, asdict

import wasmtime


@dataclass
class EngineConfig:
    """Compilation settings shared by every module and store of a runtime."""
    cranelift_opt_level: str = "speed"  # none | speed | speed_and_size
    wasm_simd: bool = True
    wasm_multi_value: bool = True
    wasm_reference_types: bool = True
    cache: bool = False

    def build(self) -> wasmtime.Config:
        config = wasmtime.Config()
        config.cranelift_opt_level = self.cranelift_opt_level
        config.wasm_simd = self.wasm_simd
        config.wasm_multi_value = self.wasm_multi_value
        config.wasm_reference_types = self.wasm_reference_types
        if self.cache:
            config.cache = True
        return config


@dataclass
class BridgeConfig:
    """Callback bridge configuration."""
    reply_timeout: Optional[float] = None  # seconds, None waits forever


@dataclass
class DispatcherConfig:
    """Worker thread configuration."""
    thread_name_prefix: str = "wasm-call"


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    engine: EngineConfig
    bridge: BridgeConfig
    dispatcher: DispatcherConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            engine=EngineConfig(),
            bridge=BridgeConfig(),
            dispatcher=DispatcherConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls(
            engine=EngineConfig(**data.get('engine', {})),
            bridge=BridgeConfig(**data.get('bridge', {})),
            dispatcher=DispatcherConfig(**data.get('dispatcher', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'engine': asdict(self.engine),
            'bridge': asdict(self.bridge),
            'dispatcher': asdict(self.dispatcher),
            'monitoring': asdict(self.monitoring)
        }
