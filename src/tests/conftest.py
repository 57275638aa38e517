import itertools
import threading
import time

import pytest

from engine.config import EngineSettings
from engine.db import make_session_factory
from engine.errors import ContainerCreateError, ImagePullError
from engine.events import EventKind, EventPublisher, InMemoryFanOut
from engine.persistence import ScanStore
from engine.scan_engine import ExecutionEngine
from tools.base import STDERR, STDOUT, ContainerHandle, ContainerRuntime, OutputChunk

_ids = itertools.count(1)


class Script:
    """What the next fake container does."""

    def __init__(self, chunks=(), exit_code=0, hang=False, pull_error=None, create_error=None, exit_gate=None,
                 pull_delay=0.0):
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.hang = hang
        self.pull_error = pull_error
        self.create_error = create_error
        self.exit_gate = exit_gate
        self.pull_delay = pull_delay


class FakeContainer(ContainerHandle):
    def __init__(self, spec, script):
        self._id = f"fake-{next(_ids)}"
        self.spec = spec
        self.script = script
        self.started = threading.Event()
        self.stopped = threading.Event()
        self.drained = threading.Event()
        self.removed = False

    @property
    def id(self):
        return self._id


class FakeRuntime(ContainerRuntime):
    mode = "real"

    def __init__(self):
        self.script = Script()
        self.scripts = {}
        self.calls = []
        self.containers = []
        self.reachable = True

    def script_for(self, target, script):
        self.scripts[target] = script

    def _script(self, spec):
        for target, script in self.scripts.items():
            if target in spec.command:
                return script
        return self.script

    def ping(self):
        self.calls.append("ping")
        return self.reachable

    def image_present(self, image):
        return True

    def ensure_image(self, image):
        self.calls.append("ensure_image")
        if self.script.pull_delay:
            time.sleep(self.script.pull_delay)
        if self.script.pull_error:
            raise ImagePullError(self.script.pull_error)

    def create(self, spec):
        self.calls.append("create")
        script = self._script(spec)
        if script.create_error:
            raise ContainerCreateError(script.create_error)
        container = FakeContainer(spec, script)
        self.containers.append(container)
        return container

    def attach(self, handle):
        self.calls.append("attach")
        return self._stream(handle)

    def _stream(self, handle):
        handle.started.wait(5)
        for stream, text in handle.script.chunks:
            if handle.stopped.is_set():
                break
            yield OutputChunk(stream, text)
        handle.drained.set()
        if handle.script.hang:
            handle.stopped.wait(10)

    def start(self, handle):
        self.calls.append("start")
        handle.started.set()

    def wait(self, handle):
        self.calls.append("wait")
        script = handle.script
        if script.hang:
            handle.stopped.wait(10)
            return 137
        handle.drained.wait(5)
        if script.exit_gate is not None:
            script.exit_gate.wait(10)
        return script.exit_code

    def stop(self, handle, grace_seconds=0):
        self.calls.append("stop")
        handle.stopped.set()
        handle.started.set()

    def remove(self, handle, force=True):
        self.calls.append("remove")
        handle.removed = True
        handle.stopped.set()


class EventRecorder:
    def __init__(self):
        self.events = []
        self.lock = threading.Lock()

    def __call__(self, event):
        with self.lock:
            self.events.append(event)

    def for_scan(self, scan_id):
        with self.lock:
            return [e for e in self.events if e.scan_id == scan_id]

    def kinds(self, scan_id):
        return [e.kind for e in self.for_scan(scan_id)]

    def terminal(self, scan_id):
        return [e for e in self.for_scan(scan_id) if e.kind in (EventKind.COMPLETE, EventKind.ERROR)]


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        database_url=f"sqlite:///{tmp_path / 'scans.db'}",
        stream_drain_seconds=1.0,
        simulation_line_delay=0.0,
    )


@pytest.fixture
def store(settings):
    return ScanStore(make_session_factory(settings.database_url))


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def fan_out(recorder):
    fan_out = InMemoryFanOut()
    fan_out.subscribe(InMemoryFanOut.WILDCARD, recorder)
    return fan_out


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def engine(settings, runtime, store, fan_out):
    engine = ExecutionEngine(settings, runtime, store, EventPublisher(fan_out))
    yield engine
    engine.shutdown(timeout=5)


def run_in_thread(func, *args):
    """Run func in a thread; returns (thread, holder) where holder['result'] is set on return."""
    holder = {}

    def target():
        holder["result"] = func(*args)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, holder


@pytest.fixture
def stdout_chunks():
    return [(STDOUT, "Starting Nikto\n"), (STDOUT, "+ Server: nginx\n"), (STDERR, "warning: slow host\n"), (STDOUT, "+ 1 item reported\n")]
