# src/engine/config.py
"""
EngineSettings: environment driven configuration for the execution engine.
"""
import os
from dataclasses import dataclass
from typing import Optional

from engine.errors import ConfigurationError

REAL = "real"
DEGRADED = "degraded"
EXECUTION_MODES = (REAL, DEGRADED)

DEFAULT_IMAGE = "pentriarch/kali-scanner:latest"


def _float_env(name: str, default: float) -> float:
    try:
        value = os.getenv(name)
        return float(value) if value is not None else default
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        value = os.getenv(name)
        return int(value) if value is not None else default
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _execution_mode_env() -> str:
    mode = os.getenv("EXECUTION_MODE")
    if mode is None:
        # legacy switch from the console deployment
        real = os.getenv("REAL_EXECUTION")
        if real is not None and real.strip().lower() == "false":
            return DEGRADED
        return REAL
    return mode.strip().lower()


@dataclass
class EngineSettings:
    execution_mode: str = REAL
    default_image: str = DEFAULT_IMAGE
    default_timeout_ms: int = 10 * 60 * 1000
    max_timeout_ms: int = 30 * 60 * 1000
    cpu_limit: float = 0.5
    memory_limit_mb: int = 512
    engine_endpoint: Optional[str] = None
    strict_engine: bool = False
    database_url: str = "sqlite:///./scan_engine.db"
    tools_config_file: Optional[str] = None
    simulation_line_delay: float = 0.2
    stream_drain_seconds: float = 5.0

    def __post_init__(self):
        if self.execution_mode not in EXECUTION_MODES:
            raise ConfigurationError(
                f"Unknown execution mode '{self.execution_mode}'. Use one of: {', '.join(EXECUTION_MODES)}."
            )
        if self.cpu_limit <= 0 or self.memory_limit_mb <= 0:
            raise ConfigurationError("CPU and memory limits must be positive.")
        if self.default_timeout_ms <= 0 or self.default_timeout_ms > self.max_timeout_ms:
            raise ConfigurationError("Default timeout must be positive and not exceed the maximum timeout.")

    @property
    def real(self) -> bool:
        return self.execution_mode == REAL

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Create settings from environment variables (evaluated at call time)."""
        return cls(
            execution_mode=_execution_mode_env(),
            default_image=os.getenv("KALI_CONTAINER_IMAGE", cls.default_image),
            default_timeout_ms=_int_env("SCAN_DEFAULT_TIMEOUT_MS", cls.default_timeout_ms),
            max_timeout_ms=_int_env("SCAN_MAX_TIMEOUT_MS", cls.max_timeout_ms),
            cpu_limit=_float_env("CONTAINER_CPU_LIMIT", cls.cpu_limit),
            memory_limit_mb=_int_env("CONTAINER_MEMORY_LIMIT_MB", cls.memory_limit_mb),
            engine_endpoint=os.getenv("DOCKER_HOST") or None,
            strict_engine=_bool_env("STRICT_ENGINE", cls.strict_engine),
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            tools_config_file=os.getenv("TOOLS_CONFIG_FILE") or None,
            simulation_line_delay=_float_env("SIMULATION_LINE_DELAY", cls.simulation_line_delay),
            stream_drain_seconds=_float_env("STREAM_DRAIN_SECONDS", cls.stream_drain_seconds),
        )
