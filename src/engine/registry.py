# src/engine/registry.py
"""
ScanRegistry: in-memory table of active executions, at most one per scan id.
"""
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from engine.errors import ScanConflictError

TIMEOUT = "timeout"
CANCELLED = "cancelled"
SHUTDOWN = "shutdown"


@dataclass
class ScanOutcome:
    status: str  # completed | failed | cancelled
    success: bool
    exit_code: Optional[int]
    duration_ms: int
    error: Optional[str] = None


@dataclass
class ScanResult:
    success: bool
    status: str  # completed | failed | cancelled | rejected
    output: str = ""
    error: Optional[str] = None
    container_id: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScanExecution:
    scan_id: str
    user_id: str
    image: str
    argv: tuple
    mode: str
    container_id: str = ""
    start_time: datetime = field(default_factory=datetime.utcnow)
    killed: bool = False
    kill_reason: Optional[str] = None
    finalized: bool = False
    stream_error: Optional[str] = None
    outcome: Optional[ScanOutcome] = None
    timeout_handle: Optional[threading.Timer] = field(default=None, repr=False)
    container: object = field(default=None, repr=False)
    stdout: List[str] = field(default_factory=list, repr=False)
    stderr: List[str] = field(default_factory=list, repr=False)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def mark_killed(self, reason: str) -> bool:
        """Set the killed flag once; returns False if already killed or finalized."""
        with self.lock:
            if self.killed or self.finalized:
                return False
            self.killed = True
            self.kill_reason = reason
            return True

    def elapsed_ms(self) -> int:
        return int((datetime.utcnow() - self.start_time).total_seconds() * 1000)

    @property
    def output(self) -> str:
        return "".join(self.stdout)

    @property
    def error_output(self) -> str:
        return "".join(self.stderr)


class ScanRegistry:
    def __init__(self):
        self._executions: Dict[str, ScanExecution] = {}
        self._lock = threading.Lock()

    def register(self, execution: ScanExecution) -> None:
        with self._lock:
            if execution.scan_id in self._executions:
                raise ScanConflictError(execution.scan_id)
            self._executions[execution.scan_id] = execution

    def get(self, scan_id: str) -> Optional[ScanExecution]:
        with self._lock:
            return self._executions.get(scan_id)

    def remove(self, execution: ScanExecution) -> bool:
        """Remove this exact execution; only the first caller gets True."""
        with self._lock:
            if self._executions.get(execution.scan_id) is execution:
                del self._executions[execution.scan_id]
                return True
            return False

    def active(self) -> List[ScanExecution]:
        with self._lock:
            return list(self._executions.values())

    def __contains__(self, scan_id: str) -> bool:
        with self._lock:
            return scan_id in self._executions

    def __len__(self) -> int:
        with self._lock:
            return len(self._executions)
