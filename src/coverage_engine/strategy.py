"""
Execution strategy selection

A coverage run computes cells either one at a time on the event loop or
with a small worker pool. The pool is used only when the host reports
enough cores and free memory.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import psutil

from common.config import CoverageConfig, get_config
from common.logging_config import ServiceLogger

logger = ServiceLogger("coverage", "strategy")


class ExecutionStrategy(Enum):
    SEQUENTIAL = "sequential"
    BOUNDED_PARALLEL = "bounded_parallel"


@dataclass(frozen=True)
class DeviceCapabilities:
    cpu_count: int
    available_memory_bytes: int


def probe_device() -> DeviceCapabilities:
    """Logical core count and currently available memory"""
    return DeviceCapabilities(
        cpu_count=psutil.cpu_count(logical=True) or 1,
        available_memory_bytes=int(psutil.virtual_memory().available)
    )


def select_strategy(capabilities: DeviceCapabilities, config: CoverageConfig) -> ExecutionStrategy:
    if (capabilities.cpu_count >= config.parallel_min_cores
            and capabilities.available_memory_bytes >= config.parallel_min_memory_bytes
            and config.parallel_workers > 1):
        return ExecutionStrategy.BOUNDED_PARALLEL
    return ExecutionStrategy.SEQUENTIAL


def probe_execution_strategy(config: Optional[CoverageConfig] = None) -> ExecutionStrategy:
    """Pick the strategy for this host, falling back to sequential if probing fails"""
    config = config or get_config().coverage
    try:
        capabilities = probe_device()
    except (OSError, psutil.Error) as e:
        logger.warning(f"Device probe failed, using sequential execution: {e}")
        return ExecutionStrategy.SEQUENTIAL

    strategy = select_strategy(capabilities, config)
    logger.info(
        f"Execution strategy: {strategy.value}",
        extra={
            'cpu_count': capabilities.cpu_count,
            'available_memory_mb': capabilities.available_memory_bytes // (1024 * 1024)
        }
    )
    return strategy
