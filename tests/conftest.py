"""
Pytest configuration and shared fixtures.

Provides:
- Logging setup
- Markers
- Fresh global state (config, traces, trace cache, executor) per test
"""

import pytest
import torch
from pathlib import Path
import sys
import logging

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lazytrace.caching.trace_cache import reset_trace_cache
from lazytrace.config import LazyTraceConfig, set_config
from lazytrace.core.context import reset_context
from lazytrace.core.shape_inference import infer_output_shape
from lazytrace.runtime.executor import reset_executor


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def pytest_configure(config):
    """Configure pytest markers and print the test environment."""

    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "robustness: marks robustness tests (thread safety, concurrency)"
    )

    print("\n" + "="*60)
    print("TEST ENVIRONMENT")
    print("="*60)
    print(f"Python: {sys.version.split()[0]}")
    print(f"PyTorch: {torch.__version__}")
    print(f"CUDA: {'Available' if torch.cuda.is_available() else 'Not available'}")
    print("="*60 + "\n")


def _reset_state():
    reset_executor()
    reset_context()
    reset_trace_cache()
    infer_output_shape.cache_clear()


@pytest.fixture(autouse=True)
def fresh_state():
    """Every test starts with default config, empty traces and an empty cache."""
    set_config(LazyTraceConfig())
    _reset_state()
    yield
    _reset_state()
    set_config(LazyTraceConfig())


@pytest.fixture
def cpu():
    from lazytrace import Device
    return Device.parse("CPU:0")


@pytest.fixture
def tpu_config():
    """Config exposing two emulated TPU devices next to the CPU."""
    config = LazyTraceConfig()
    config.runtime.devices = ["CPU:0", "TPU:0", "TPU:1"]
    config.runtime.collective_timeout = 10.0
    set_config(config)
    return config
