"""Engine configuration.

This module provides the per-scheduler configuration object. Defaults come
from flowengine/settings.py; callers construct one EngineConfig per engine
instead of mutating process-wide state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from . import settings


@dataclass
class EngineConfig:
    """Configuration for a Scheduler instance."""

    # Circuit breaker
    failure_threshold: int = field(default_factory=lambda: settings.CIRCUIT_FAILURE_THRESHOLD)
    recovery_timeout_ms: int = field(default_factory=lambda: settings.CIRCUIT_RECOVERY_TIMEOUT_MS)
    circuit_breaker_enabled: bool = True

    # Control-flow steps
    loop_max_iterations: int = field(default_factory=lambda: settings.LOOP_MAX_ITERATIONS)
    wait_max_ms: int = field(default_factory=lambda: settings.WAIT_MAX_MS)
    parallel_max_concurrency: int = field(default_factory=lambda: settings.PARALLEL_MAX_CONCURRENCY)

    # Custom steps
    custom_step_timeout_ms: int = field(default_factory=lambda: settings.CUSTOM_STEP_TIMEOUT_MS)

    # Applied to steps that declare no timeout (None = unbounded)
    default_step_timeout_ms: Optional[int] = None

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.loop_max_iterations < 1:
            raise ValueError("loop_max_iterations must be >= 1")
        if self.parallel_max_concurrency < 1:
            raise ValueError("parallel_max_concurrency must be >= 1")
