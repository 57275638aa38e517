import threading
import time

from conftest import Script, run_in_thread, wait_for
from engine.events import EventKind
from engine.scan_engine import REJECTED
from tools.base import STDERR, STDOUT


def _container_ready(engine, scan_id):
    execution = engine.registry.get(scan_id)
    return execution is not None and bool(execution.container_id) and execution.timeout_handle is not None


def test_successful_scan(engine, runtime, store, recorder, stdout_chunks):
    runtime.script = Script(chunks=stdout_chunks, exit_code=0)

    result = engine.execute_scan("s1", "nikto -h 93.184.216.34", "u1", 5000)
    engine.publisher.flush()

    assert result.success is True
    assert result.status == "completed"
    assert result.output == "Starting Nikto\n+ Server: nginx\n+ 1 item reported\n"
    assert result.container_id == runtime.containers[0].id
    assert result.exit_code == 0
    assert store.get_scan("s1")["status"] == "completed"
    assert "s1" not in engine.registry

    kinds = recorder.kinds("s1")
    assert kinds.count(EventKind.COMPLETE) == 1
    assert EventKind.ERROR not in kinds
    assert kinds[-1] == EventKind.COMPLETE
    assert kinds[-2] == EventKind.CONTAINER_STATUS
    complete = recorder.terminal("s1")[0]
    assert complete.user_id == "u1"
    assert complete.payload["output"] == result.output


def test_container_spec_has_resource_limits(engine, runtime):
    engine.execute_scan("s1", "nmap -sV target.example.com", "u1", 5000)
    spec = runtime.containers[0].spec
    assert spec.cpu_limit == 0.5
    assert spec.memory_limit_mb == 512
    assert spec.image == "pentriarch/kali-scanner:latest"
    assert list(spec.command) == ["nmap", "-sV", "-T4", "-sT", "-Pn", "-sV", "target.example.com"]
    assert spec.labels["scan_id"] == "s1"


def test_output_is_persisted_with_levels(engine, runtime, store, stdout_chunks):
    runtime.script = Script(chunks=stdout_chunks)
    engine.execute_scan("s1", "nikto -h example.com", "u1")
    logs = store.get_logs("s1")
    chunk_logs = [(log["level"], log["raw_output"]) for log in logs if log["message"] in ("Command output", "Command error output")]
    assert chunk_logs == [
        ("info", "Starting Nikto\n"),
        ("info", "+ Server: nginx\n"),
        ("error", "warning: slow host\n"),
        ("info", "+ 1 item reported\n"),
    ]
    assert logs[-1]["message"] == "Scan completed successfully"


def test_progress_events_follow_stream_order(engine, runtime, recorder):
    chunks = [(STDOUT if i % 3 else STDERR, f"chunk {i}\n") for i in range(50)]
    runtime.script = Script(chunks=chunks)
    engine.execute_scan("s1", "gobuster dir -u http://example.com", "u1")
    engine.publisher.flush()
    streamed = [
        e.payload["output"] for e in recorder.for_scan("s1")
        if e.kind == EventKind.PROGRESS and e.payload["currentStep"] in ("Streaming output", "Processing stderr")
    ]
    assert streamed == [text for _, text in chunks]


def test_non_zero_exit_reports_stderr(engine, runtime, store, recorder):
    runtime.script = Script(chunks=[(STDOUT, "partial\n"), (STDERR, "sqlmap: connection refused\n")], exit_code=1)
    result = engine.execute_scan("s1", "sqlmap -u http://x", "u1")
    engine.publisher.flush()

    assert result.success is False
    assert result.status == "failed"
    assert result.error == "sqlmap: connection refused\n"
    assert result.output == "partial\n"
    assert result.exit_code == 1
    record = store.get_scan("s1")
    assert record["status"] == "failed"
    assert record["error"] == "sqlmap: connection refused\n"
    errors = recorder.terminal("s1")
    assert len(errors) == 1 and errors[0].kind == EventKind.ERROR
    statuses = [e.payload["status"] for e in recorder.for_scan("s1") if e.kind == EventKind.CONTAINER_STATUS]
    assert statuses[-1] == "error"


def test_forced_timeout_kills_container(engine, runtime, store, recorder):
    runtime.script = Script(chunks=[(STDOUT, "[*] starting\n")], hang=True)

    started = time.monotonic()
    result = engine.execute_scan("s2", "sqlmap --batch -u http://x", "u1", 100)
    elapsed = time.monotonic() - started
    engine.publisher.flush()

    assert result.success is False
    assert result.error == "Scan killed"
    assert result.container_id == runtime.containers[0].id
    assert elapsed < 3
    container = runtime.containers[0]
    assert container.stopped.is_set() and container.removed
    assert "s2" not in engine.registry

    record = store.get_scan("s2")
    assert record["status"] == "failed"
    assert record["metadata"]["killed"] is True
    assert record["metadata"]["kill_reason"] == "timeout"

    terminal = recorder.terminal("s2")
    assert len(terminal) == 1
    assert terminal[0].payload["message"] == "Scan killed"
    assert terminal[0].payload["details"]["reason"] == "timeout"
    assert recorder.kinds("s2")[-1] == EventKind.ERROR


def test_timeout_finalizes_even_if_supervisor_is_blocked(engine, runtime, recorder):
    runtime.script = Script(hang=True)
    thread, holder = run_in_thread(engine.execute_scan, "s2", "nmap 10.0.0.1", "u1", 150)
    assert wait_for(lambda: "s2" not in engine.registry and len(runtime.containers) == 1, timeout=3)
    thread.join(5)
    engine.publisher.flush()
    assert holder["result"].error == "Scan killed"
    assert len(recorder.terminal("s2")) == 1


def test_unknown_tool_is_rejected_before_any_container_call(engine, runtime, store, recorder):
    result = engine.execute_scan("s3", "unknowncmd target", "u1")
    engine.publisher.flush()

    assert result.success is False
    assert result.status == REJECTED
    assert "unknowncmd" in result.error
    assert runtime.calls == []
    assert len(engine.registry) == 0
    assert recorder.for_scan("s3") == []
    assert store.get_scan("s3") is None


def test_invalid_timeout_is_rejected(engine, runtime):
    result = engine.execute_scan("s1", "nmap 10.0.0.1", "u1", 31 * 60 * 1000)
    assert result.status == REJECTED
    assert "create" not in runtime.calls
    assert engine.execute_scan("s1", "nmap 10.0.0.1", "u1", 0).status == REJECTED


def test_second_execution_for_active_scan_is_rejected(engine, runtime):
    runtime.script = Script(hang=True)
    thread, holder = run_in_thread(engine.execute_scan, "s1", "nmap 10.0.0.1", "u1", 5000)
    assert wait_for(lambda: _container_ready(engine, "s1"))

    second = engine.execute_scan("s1", "nmap 10.0.0.2", "u1", 5000)
    assert second.status == REJECTED
    assert "already" in second.error
    assert len(runtime.containers) == 1

    assert engine.kill_scan("s1") is True
    thread.join(5)
    assert holder["result"].status == "cancelled"


def test_kill_scan_is_idempotent(engine, runtime, store, recorder):
    runtime.script = Script(chunks=[(STDOUT, "scanning\n")], hang=True)
    thread, holder = run_in_thread(engine.execute_scan, "s4", "nmap 10.0.0.1", "u1", 60000)
    assert wait_for(lambda: _container_ready(engine, "s4"))

    assert engine.kill_scan("s4") is True
    assert engine.kill_scan("s4") is False
    thread.join(5)
    engine.publisher.flush()

    result = holder["result"]
    assert result.success is False
    assert result.error == "Scan killed"
    assert result.status == "cancelled"
    assert store.get_scan("s4")["status"] == "cancelled"
    assert len(recorder.terminal("s4")) == 1
    assert recorder.kinds("s4")[-1] == EventKind.ERROR
    assert engine.kill_scan("s4") is False


def test_kill_after_completion_returns_false(engine):
    assert engine.execute_scan("s1", "whatweb example.com", "u1").success is True
    assert engine.kill_scan("s1") is False
    assert engine.kill_scan("never-started") is False


def test_kill_and_natural_exit_race_finalizes_once(engine, runtime, recorder):
    for attempt in range(10):
        scan_id = f"race-{attempt}"
        gate = threading.Event()
        runtime.script = Script(chunks=[(STDOUT, "done\n")], exit_gate=gate)
        thread, holder = run_in_thread(engine.execute_scan, scan_id, "nmap 10.0.0.1", "u1", 60000)
        assert wait_for(lambda: _container_ready(engine, scan_id))

        barrier = threading.Barrier(2)

        def exit_naturally():
            barrier.wait()
            gate.set()

        def kill():
            barrier.wait()
            engine.kill_scan(scan_id)

        racers = [threading.Thread(target=exit_naturally), threading.Thread(target=kill)]
        for t in racers:
            t.start()
        for t in racers:
            t.join(5)
        thread.join(5)
        engine.publisher.flush()

        assert scan_id not in engine.registry
        assert len(recorder.terminal(scan_id)) == 1
        assert recorder.kinds(scan_id)[-1] in (EventKind.COMPLETE, EventKind.ERROR)
        assert holder["result"].status in ("completed", "cancelled")


def test_provisioning_failures_become_failed_results(engine, runtime, store, recorder):
    runtime.script = Script(pull_error="manifest unknown")
    result = engine.execute_scan("s1", "nmap 10.0.0.1", "u1")
    assert result.status == "failed"
    assert "manifest unknown" in result.error
    assert "create" not in runtime.calls

    runtime.script = Script(create_error="no space left on device")
    result = engine.execute_scan("s2", "nmap 10.0.0.1", "u1")
    engine.publisher.flush()
    assert result.status == "failed"
    assert "no space left" in result.error
    assert result.container_id is None
    assert store.get_scan("s2")["status"] == "failed"
    assert len(engine.registry) == 0
    assert [e.kind for e in recorder.terminal("s2")] == [EventKind.ERROR]


def test_get_status(engine, runtime):
    assert engine.get_status("s1") == {"exists": False, "running": False}
    runtime.script = Script(hang=True)
    thread, _ = run_in_thread(engine.execute_scan, "s1", "nmap 10.0.0.1", "u1", 60000)
    assert wait_for(lambda: _container_ready(engine, "s1"))

    status = engine.get_status("s1")
    assert status["exists"] is True and status["running"] is True
    assert status["stats"]["container_id"] == runtime.containers[0].id
    assert status["stats"]["image"] == "pentriarch/kali-scanner:latest"
    assert status["stats"]["uptime"].endswith("s")
    assert engine.get_status() == {"exists": True, "running": True}

    engine.kill_scan("s1")
    thread.join(5)
    assert engine.get_status("s1") == {"exists": False, "running": False}


def test_health_check_never_raises(engine, runtime):
    health = engine.health_check()
    assert health == {
        "engine_reachable": True,
        "default_image_present": True,
        "active_count": 0,
        "mode": "real",
        "error": None,
    }

    def broken_ping():
        raise RuntimeError("socket gone")

    runtime.ping = broken_ping
    health = engine.health_check()
    assert health["engine_reachable"] is False
    assert health["default_image_present"] is False
    assert "socket gone" in health["error"]


def test_unreachable_engine_in_real_mode_is_a_clear_rejection(engine, runtime, store):
    runtime.reachable = False
    result = engine.execute_scan("s1", "nmap 10.0.0.1", "u1")
    assert result.status == REJECTED
    assert "unreachable" in result.error
    assert "create" not in runtime.calls
    assert store.get_scan("s1")["status"] == "failed"


def test_cleanup_kills_all_active_scans(engine, runtime, store):
    runtime.script = Script(hang=True)
    runs = [run_in_thread(engine.execute_scan, f"s{i}", "nmap 10.0.0.1", "u1", 60000) for i in range(3)]
    assert wait_for(lambda: all(_container_ready(engine, f"s{i}") for i in range(3)))

    assert engine.cleanup() == 3
    for thread, holder in runs:
        thread.join(5)
        assert holder["result"].error == "Scan killed"
    assert len(engine.registry) == 0
    assert store.get_scan("s0")["metadata"]["kill_reason"] == "shutdown"


def test_shutdown_drains_and_refuses_new_scans(engine, runtime):
    runtime.script = Script(hang=True)
    thread, holder = run_in_thread(engine.execute_scan, "s1", "nmap 10.0.0.1", "u1", 60000)
    assert wait_for(lambda: _container_ready(engine, "s1"))

    assert engine.shutdown(timeout=5) is True
    assert not thread.is_alive()
    assert holder["result"].status == "cancelled"
    assert engine.execute_scan("s2", "nmap 10.0.0.1", "u1").status == REJECTED


def test_timeout_covers_a_slow_image_pull(engine, runtime, store, recorder):
    runtime.script = Script(pull_delay=1.5)

    started = time.monotonic()
    result = engine.execute_scan("p1", "nmap 10.0.0.1", "u1", 100)
    elapsed = time.monotonic() - started
    engine.publisher.flush()

    assert result.status == "failed"
    assert result.error == "Scan killed"
    assert elapsed < 1.0
    assert "p1" not in engine.registry
    record = store.get_scan("p1")
    assert record["status"] == "failed"
    assert record["metadata"]["kill_reason"] == "timeout"
    assert len(recorder.terminal("p1")) == 1
    # the pull finishing later must not launch anything
    assert not wait_for(lambda: "create" in runtime.calls, timeout=2.0)
    assert runtime.containers == []


def test_finished_scan_id_is_not_reused(engine, runtime, store, recorder):
    assert engine.execute_scan("s1", "whatweb example.com", "u1").status == "completed"

    again = engine.execute_scan("s1", "nmap 10.0.0.1", "u1")
    engine.publisher.flush()

    assert again.status == REJECTED
    assert "already finished" in again.error
    assert len(runtime.containers) == 1
    assert store.get_scan("s1")["status"] == "completed"
    assert len(recorder.terminal("s1")) == 1
