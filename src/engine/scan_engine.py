# src/engine/scan_engine.py
"""
ExecutionEngine: public entry point for running, killing and inspecting scans.
"""
import logging
import threading
import time
from typing import Optional

from engine.command import CommandInterpreter, ResolvedCommand
from engine.config import EngineSettings
from engine.db import make_session_factory
from engine.errors import (
    EngineUnavailableError,
    InvalidTimeoutError,
    PreconditionError,
    ScanConflictError,
    ScanFinishedError,
)
from engine.events import EventPublisher, InMemoryFanOut
from engine.models import FAILED, TERMINAL_STATUSES
from engine.persistence import ScanStore
from engine.registry import CANCELLED, SHUTDOWN, ScanExecution, ScanRegistry, ScanResult
from engine.supervisor import ExecutionSupervisor
from tools.docker_runtime import DockerRuntime
from tools.registry import ToolRegistry
from tools.simulated_runtime import SimulatedRuntime
from utils.targets import format_uptime

REJECTED = "rejected"


def build_runtime(settings: EngineSettings):
    """Exactly one runtime per deployment, chosen by the execution mode."""
    if settings.real:
        return DockerRuntime(settings.engine_endpoint)
    return SimulatedRuntime(line_delay=settings.simulation_line_delay)


class ExecutionEngine:
    def __init__(self, settings: EngineSettings, runtime, store: ScanStore, publisher: EventPublisher,
                 tools: Optional[ToolRegistry] = None):
        self.settings = settings
        self.runtime = runtime
        self.store = store
        self.publisher = publisher
        self.registry = ScanRegistry()
        self.interpreter = CommandInterpreter(
            tools or ToolRegistry.from_yaml(settings.default_image, settings.tools_config_file)
        )
        self.supervisor = ExecutionSupervisor(runtime, self.registry, publisher, store, settings)
        self._inflight = 0
        self._drained = threading.Condition()
        self._accepting = True
        logging.info(f"Execution engine initialized (mode={self.mode}, image={settings.default_image})")

    @classmethod
    def from_settings(cls, settings: EngineSettings, fan_out=None) -> "ExecutionEngine":
        store = ScanStore(make_session_factory(settings.database_url))
        publisher = EventPublisher(fan_out or InMemoryFanOut())
        return cls(settings, build_runtime(settings), store, publisher)

    @property
    def mode(self) -> str:
        return self.runtime.mode

    # command resolution

    def resolve(self, command: str = None, tool: str = None, target: str = None, flags=None, preset: str = None):
        """
        Resolve one of the three request shapes into (ResolvedCommand, preset timeout or None).
        Raises PreconditionError subclasses; nothing is touched on failure.
        """
        if preset:
            return self.interpreter.from_preset(preset, target)
        if tool:
            return self.interpreter.from_request(tool, target, flags), None
        return self.interpreter.parse(command), None

    def _resolve_timeout(self, timeout_ms) -> int:
        if timeout_ms is None:
            return self.settings.default_timeout_ms
        if timeout_ms <= 0:
            raise InvalidTimeoutError("Timeout must be a positive number of milliseconds.")
        if timeout_ms > self.settings.max_timeout_ms:
            raise InvalidTimeoutError(f"Timeout cannot exceed {self.settings.max_timeout_ms // 60000} minutes.")
        return int(timeout_ms)

    def _require_engine(self):
        if not self.settings.real:
            return
        try:
            reachable = self.runtime.ping()
        except EngineUnavailableError:
            reachable = False
        if not reachable:
            raise EngineUnavailableError(
                "Container engine is unreachable and execution mode is 'real'. "
                "Start the engine, fix DOCKER_HOST, or set EXECUTION_MODE=degraded."
            )

    @property
    def accepting(self) -> bool:
        return self._accepting

    def admit(self, scan_id: str, timeout_ms: Optional[int] = None) -> int:
        """
        Admission checks shared by synchronous and background execution.

        Returns the effective timeout. Raises EngineUnavailableError while the
        engine is shutting down, and PreconditionError subclasses for a bad
        timeout, an active execution or a scan that already reached a terminal
        status.
        """
        if not self._accepting:
            raise EngineUnavailableError("Execution engine is shutting down.")
        timeout_ms = self._resolve_timeout(timeout_ms)
        if scan_id in self.registry:
            raise ScanConflictError(scan_id)
        status = self.store.get_status(scan_id)
        if status in TERMINAL_STATUSES:
            raise ScanFinishedError(scan_id, status)
        return timeout_ms

    def _reject(self, scan_id: str, error: Exception) -> ScanResult:
        logging.warning(f"[scan_id={scan_id}] Scan rejected: {error}")
        return ScanResult(success=False, status=REJECTED, error=str(error))

    # command surface

    def execute_scan(self, scan_id: str, command: str, user_id: str, timeout_ms: Optional[int] = None) -> ScanResult:
        try:
            resolved, _ = self.resolve(command=command)
        except PreconditionError as e:
            return self._reject(scan_id, e)
        return self.run(scan_id, resolved, user_id, timeout_ms)

    def execute_request(self, scan_id: str, user_id: str, tool: str, target: str, flags=None,
                        timeout_ms: Optional[int] = None) -> ScanResult:
        try:
            resolved, _ = self.resolve(tool=tool, target=target, flags=flags)
        except PreconditionError as e:
            return self._reject(scan_id, e)
        return self.run(scan_id, resolved, user_id, timeout_ms)

    def execute_preset(self, scan_id: str, user_id: str, preset: str, target: str) -> ScanResult:
        try:
            resolved, preset_timeout = self.resolve(preset=preset, target=target)
        except PreconditionError as e:
            return self._reject(scan_id, e)
        return self.run(scan_id, resolved, user_id, preset_timeout)

    def run(self, scan_id: str, resolved: ResolvedCommand, user_id: str, timeout_ms: Optional[int] = None) -> ScanResult:
        """Drive an already resolved command to its terminal state."""
        try:
            timeout_ms = self.admit(scan_id, timeout_ms)
        except (PreconditionError, EngineUnavailableError) as e:
            return self._reject(scan_id, e)
        try:
            self._require_engine()
        except EngineUnavailableError as e:
            if scan_id not in self.registry:
                self.store.update_status(scan_id, FAILED, {"execution_error": str(e), "mode": self.mode})
                self.store.insert_log(scan_id, "error", str(e), str(e))
            return self._reject(scan_id, e)

        execution = ScanExecution(
            scan_id=scan_id,
            user_id=user_id or "system",
            image=resolved.image,
            argv=resolved.argv,
            mode=self.mode,
        )
        with self._drained:
            self._inflight += 1
        try:
            return self.supervisor.run(execution, timeout_ms, tool=resolved.tool.value)
        except ScanConflictError as e:
            return self._reject(scan_id, e)
        finally:
            with self._drained:
                self._inflight -= 1
                self._drained.notify_all()

    def kill_scan(self, scan_id: str, reason: str = CANCELLED) -> bool:
        execution = self.registry.get(scan_id)
        if execution is None:
            return False
        try:
            return self.supervisor.kill(execution, reason)
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Failed to kill scan: {e}")
            return False

    def get_status(self, scan_id: Optional[str] = None) -> dict:
        if scan_id:
            execution = self.registry.get(scan_id)
            if execution is not None:
                return {
                    "exists": True,
                    "running": not execution.killed,
                    "stats": {
                        "memory_usage": "N/A",
                        "cpu_usage": "N/A",
                        "uptime": format_uptime(execution.elapsed_ms() / 1000),
                        "container_id": execution.container_id,
                        "image": execution.image,
                        "created_at": execution.start_time.isoformat() + "Z",
                    },
                }
            return {"exists": False, "running": False}
        active = self.registry.active()
        return {"exists": bool(active), "running": any(not e.killed for e in active)}

    def health_check(self) -> dict:
        error = None
        try:
            reachable = bool(self.runtime.ping())
        except Exception as e:
            reachable = False
            error = str(e)
        image_present = False
        if reachable:
            try:
                image_present = bool(self.runtime.image_present(self.settings.default_image))
            except Exception as e:
                error = str(e)
        elif error is None:
            error = "Container engine unreachable"
        return {
            "engine_reachable": reachable,
            "default_image_present": image_present,
            "active_count": len(self.registry),
            "mode": self.mode,
            "error": error,
        }

    # lifecycle

    def startup(self) -> dict:
        """Startup health probe; fails hard in strict real mode."""
        health = self.health_check()
        if self.settings.real and not health["engine_reachable"]:
            message = f"Container engine unreachable at startup: {health['error']}"
            if self.settings.strict_engine:
                raise EngineUnavailableError(message)
            logging.error(message)
        elif not health["default_image_present"]:
            logging.warning(f"Default image {self.settings.default_image} is not present; it will be pulled on first use")
        logging.info(f"Execution engine ready: {health}")
        return health

    def cleanup(self) -> int:
        active = self.registry.active()
        logging.info(f"Cleaning up {len(active)} active scan(s)")
        killed = 0
        for execution in active:
            if self.kill_scan(execution.scan_id, reason=SHUTDOWN):
                killed += 1
        return killed

    def shutdown(self, timeout: float = 30.0) -> bool:
        """Stop accepting scans, kill active ones and wait for their supervisors to return."""
        self._accepting = False
        self.cleanup()
        deadline = time.monotonic() + timeout
        with self._drained:
            while self._inflight > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._drained.wait(remaining)
            drained = self._inflight == 0
        if not drained:
            logging.warning(f"Shutdown timed out with {self._inflight} scan(s) still in flight")
        self.publisher.flush()
        self.publisher.close()
        return drained
