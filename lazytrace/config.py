"""
Centralized configuration for lazytrace.

Supports loading from YAML files, environment variables (``LAZYTRACE_*``) and
defaults. Copy-tuning constants live here so that they can be changed without
touching the marshalling code; none of them affects results.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
import os
from typing import Any, Dict, List, Optional

import yaml


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


class LogLevel(Enum):
    """Log levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class TraceConfig:
    """Trace recording configuration."""
    # Warn once per trace when it grows past this many nodes (0 disables)
    max_trace_length: int = 100000

    @classmethod
    def from_env(cls) -> 'TraceConfig':
        return cls(
            max_trace_length=int(os.getenv('LAZYTRACE_MAX_TRACE_LENGTH', 100000)),
        )


@dataclass
class CacheConfig:
    """Trace cache configuration."""
    max_entries: int = 1024
    max_age_seconds: Optional[float] = None
    eviction_policy: str = "lru"  # lru / age / least_used

    @classmethod
    def from_env(cls) -> 'CacheConfig':
        return cls(
            max_entries=int(os.getenv('LAZYTRACE_CACHE_MAX_ENTRIES', 1024)),
            max_age_seconds=_env_optional_float('LAZYTRACE_CACHE_MAX_AGE'),
            eviction_policy=os.getenv('LAZYTRACE_CACHE_EVICTION', 'lru').lower(),
        )


@dataclass
class CopyConfig:
    """Host <-> device strided copy tuning."""
    # Prefer a non-minor iteration dimension only when it is this many times larger
    minor_dim_scale: int = 8
    # Minimum number of elements a single copy task should handle
    min_thread_elements: int = 100000
    # None -> half of the logical cores
    max_copy_threads: Optional[int] = None

    @classmethod
    def from_env(cls) -> 'CopyConfig':
        return cls(
            minor_dim_scale=int(os.getenv('LAZYTRACE_COPY_MINOR_DIM_SCALE', 8)),
            min_thread_elements=int(os.getenv('LAZYTRACE_COPY_MIN_THREAD_ELEMENTS', 100000)),
            max_copy_threads=_env_optional_int('LAZYTRACE_COPY_MAX_THREADS'),
        )


@dataclass
class TypeConfig:
    """Device element-type mapping switches."""
    use_bf16: bool = False
    use_32bit_long: bool = False

    @classmethod
    def from_env(cls) -> 'TypeConfig':
        return cls(
            use_bf16=_env_bool('LAZYTRACE_USE_BF16', 'false'),
            use_32bit_long=_env_bool('LAZYTRACE_USE_32BIT_LONG', 'false'),
        )


@dataclass
class RuntimeConfig:
    """Execution runtime configuration."""
    default_device: str = "CPU:0"
    # Explicit device inventory, e.g. ["CPU:0", "TPU:0", "TPU:1"]; empty -> discover
    devices: List[str] = field(default_factory=list)
    # Seconds a replica waits for its peers at a cross-replica reduction
    collective_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> 'RuntimeConfig':
        devices = os.getenv('LAZYTRACE_DEVICES', '')
        return cls(
            default_device=os.getenv('LAZYTRACE_DEFAULT_DEVICE', 'CPU:0'),
            devices=[d.strip() for d in devices.split(',') if d.strip()],
            collective_timeout=float(os.getenv('LAZYTRACE_COLLECTIVE_TIMEOUT', 60.0)),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        return cls(
            level=LogLevel(os.getenv('LAZYTRACE_LOG_LEVEL', 'info').lower()),
            format=os.getenv('LAZYTRACE_LOG_FORMAT', "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
        )


@dataclass
class LazyTraceConfig:
    """Main configuration class."""
    trace: TraceConfig = field(default_factory=TraceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    copy: CopyConfig = field(default_factory=CopyConfig)
    types: TypeConfig = field(default_factory=TypeConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug_mode: bool = False
    config_file: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'LazyTraceConfig':
        """
        Load configuration from environment variables and an optional YAML file.

        Values from the YAML file win over the environment, which wins over
        the defaults.
        """
        config = cls(
            trace=TraceConfig.from_env(),
            cache=CacheConfig.from_env(),
            copy=CopyConfig.from_env(),
            types=TypeConfig.from_env(),
            runtime=RuntimeConfig.from_env(),
            logging=LoggingConfig.from_env(),
            debug_mode=_env_bool('LAZYTRACE_DEBUG', 'false'),
        )

        if path and os.path.exists(path):
            with open(path, 'r') as f:
                yaml_data = yaml.safe_load(f)
            if yaml_data:
                config = cls._from_dict(yaml_data, base=config)
            config.config_file = path

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any], base: Optional['LazyTraceConfig'] = None) -> 'LazyTraceConfig':
        """Create config from dictionary (YAML data), layered over ``base``."""
        base = base or cls()

        def merged(section, section_cls):
            values = dict(vars(getattr(base, section)))
            values.update(data.get(section, {}) or {})
            return section_cls(**values)

        logging_config = merged('logging', LoggingConfig)
        if not isinstance(logging_config.level, LogLevel):
            logging_config.level = LogLevel(str(logging_config.level).lower())

        return cls(
            trace=merged('trace', TraceConfig),
            cache=merged('cache', CacheConfig),
            copy=merged('copy', CopyConfig),
            types=merged('types', TypeConfig),
            runtime=merged('runtime', RuntimeConfig),
            logging=logging_config,
            debug_mode=data.get('debug_mode', base.debug_mode),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {
            'trace': {
                'max_trace_length': self.trace.max_trace_length,
            },
            'cache': {
                'max_entries': self.cache.max_entries,
                'max_age_seconds': self.cache.max_age_seconds,
                'eviction_policy': self.cache.eviction_policy,
            },
            'copy': {
                'minor_dim_scale': self.copy.minor_dim_scale,
                'min_thread_elements': self.copy.min_thread_elements,
                'max_copy_threads': self.copy.max_copy_threads,
            },
            'types': {
                'use_bf16': self.types.use_bf16,
                'use_32bit_long': self.types.use_32bit_long,
            },
            'runtime': {
                'default_device': self.runtime.default_device,
                'devices': list(self.runtime.devices),
                'collective_timeout': self.runtime.collective_timeout,
            },
            'logging': {
                'level': self.logging.level.value,
                'format': self.logging.format,
            },
            'debug_mode': self.debug_mode,
        }

    def save(self, path: str) -> None:
        """Save configuration to YAML file."""
        with open(path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure the ``lazytrace`` logger hierarchy."""
    config = config or get_config().logging
    package_logger = logging.getLogger('lazytrace')
    package_logger.setLevel(getattr(logging, config.level.name))
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(config.format))
        package_logger.addHandler(handler)


# Global configuration instance
_config: Optional[LazyTraceConfig] = None


def get_config() -> LazyTraceConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = LazyTraceConfig.load(os.getenv('LAZYTRACE_CONFIG'))
    return _config


def set_config(config: LazyTraceConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def load_config(path: Optional[str] = None) -> LazyTraceConfig:
    """Load configuration from file and/or environment."""
    return LazyTraceConfig.load(path)
