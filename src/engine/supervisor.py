# src/engine/supervisor.py
"""
ExecutionSupervisor: drives one scan from registration to its terminal state.

A scan is finalized exactly once. Natural exit, the timeout timer and an
explicit kill all converge on _finalize(), and only the caller that removes the
registry entry persists and publishes the outcome.
"""
import logging
import threading

from engine.models import CANCELLED, COMPLETED, FAILED, RUNNING
from engine.registry import TIMEOUT, ScanExecution, ScanOutcome, ScanResult
from tools.base import STDOUT, ContainerSpec
from utils.targets import format_uptime

KILLED_MESSAGE = "Scan killed"


class ExecutionSupervisor:
    def __init__(self, runtime, registry, publisher, store, settings):
        self.runtime = runtime
        self.registry = registry
        self.publisher = publisher
        self.store = store
        self.settings = settings

    def run(self, execution: ScanExecution, timeout_ms: int, tool: str = None) -> ScanResult:
        scan_id, user_id = execution.scan_id, execution.user_id
        command_line = " ".join(execution.argv)
        # a kill cannot finalize before the running status is recorded
        with execution.lock:
            # raises ScanConflictError before anything else is touched
            self.registry.register(execution)
            logging.info(f"[scan_id={scan_id}] Starting {execution.mode} scan: {command_line} (timeout={timeout_ms}ms)")
            self.store.create_scan(scan_id, user_id=user_id, tool=tool, command=command_line)
            self.store.update_status(scan_id, RUNNING, {"image": execution.image, "command": command_line, "mode": execution.mode})
            self.store.insert_log(scan_id, "info", f"Starting scan: {command_line}", command_line)
            self.publisher.publish_progress(scan_id, user_id, "starting", 5, f"Preparing image {execution.image}", f"Command: {command_line}")
            # the timeout also bounds the image pull
            self._arm_timer(execution, timeout_ms)

        try:
            self._launch_and_stream(execution)
        except Exception as e:
            logging.error(f"[scan_id={scan_id}] Execution failed: {e}")
            with execution.lock:
                container = execution.container
            if container is not None:
                self._release(container)
            self._finalize(execution, exit_code=None, error=str(e))

        return self._result(execution)

    def _launch_and_stream(self, execution: ScanExecution):
        scan_id, user_id = execution.scan_id, execution.user_id

        self._provision_image(execution)
        if execution.killed:
            return

        spec = ContainerSpec(
            image=execution.image,
            command=execution.argv,
            cpu_limit=self.settings.cpu_limit,
            memory_limit_mb=self.settings.memory_limit_mb,
            labels={"scan_id": scan_id, "user_id": user_id},
        )
        container = self.runtime.create(spec)
        with execution.lock:
            execution.container = container
            execution.container_id = container.id
            cancelled = execution.killed
            if not cancelled:
                logging.info(f"[scan_id={scan_id}] Created container {container.id} from {execution.image}")
                self.publisher.publish_progress(scan_id, user_id, "running", 10, f"Launching container ({execution.image})",
                                                f"Command: {' '.join(execution.argv)}")
                self.publisher.publish_container_status(scan_id, user_id, {
                    "containerId": container.id,
                    "status": "creating",
                    "uptime": "0s",
                    "memoryUsage": "N/A",
                    "cpuUsage": "N/A",
                })
        if cancelled:
            # the kill landed while the container was being created
            self._release(container)
            return

        stream = self.runtime.attach(container)
        reader = threading.Thread(target=self._pump, args=(execution, stream), name=f"scan-{scan_id}-output", daemon=True)
        reader.start()
        self.runtime.start(container)
        exit_code = self.runtime.wait(container)
        reader.join(self.settings.stream_drain_seconds)
        if reader.is_alive():
            logging.warning(f"[scan_id={scan_id}] Output stream still open {self.settings.stream_drain_seconds}s after exit")

        logging.info(f"[scan_id={scan_id}] Container {container.id} exited with code {exit_code}")
        self._finalize(execution, exit_code=exit_code, error=execution.stream_error)

    def _provision_image(self, execution: ScanExecution):
        """
        Check or pull the image on a helper thread. Returns early once the scan is
        killed; a pull still in progress then finishes in the background.
        """
        failure = []

        def pull():
            try:
                self.runtime.ensure_image(execution.image)
            except Exception as e:
                failure.append(e)

        puller = threading.Thread(target=pull, name=f"scan-{execution.scan_id}-pull", daemon=True)
        puller.start()
        while puller.is_alive() and not execution.killed:
            puller.join(0.05)
        if failure:
            raise failure[0]

    def _pump(self, execution: ScanExecution, stream):
        try:
            for chunk in stream:
                self._on_output(execution, chunk)
        except Exception as e:
            logging.error(f"[scan_id={execution.scan_id}] Output stream error: {e}")
            execution.stream_error = str(e)

    def _on_output(self, execution: ScanExecution, chunk):
        scan_id, user_id = execution.scan_id, execution.user_id
        if chunk.stream == STDOUT:
            level, message, progress, step = "info", "Command output", 50, "Streaming output"
        else:
            level, message, progress, step = "error", "Command error output", 55, "Processing stderr"

        with execution.lock:
            if chunk.stream == STDOUT:
                execution.stdout.append(chunk.text)
            else:
                execution.stderr.append(chunk.text)
            # nothing may follow the terminal event
            if not execution.finalized:
                self.publisher.publish_progress(scan_id, user_id, "running", progress, step, chunk.text)
        self.store.insert_log(scan_id, level, message, chunk.text)

    def _arm_timer(self, execution: ScanExecution, timeout_ms: int):
        timer = threading.Timer(timeout_ms / 1000.0, self._on_timeout, args=(execution,))
        timer.daemon = True
        with execution.lock:
            if execution.finalized or execution.killed:
                return
            execution.timeout_handle = timer
            timer.start()

    def _disarm_timer(self, execution: ScanExecution):
        with execution.lock:
            timer = execution.timeout_handle
            execution.timeout_handle = None
        if timer is not None:
            timer.cancel()

    def _on_timeout(self, execution: ScanExecution):
        logging.warning(f"[scan_id={execution.scan_id}] Timeout reached after {execution.elapsed_ms()}ms, killing container")
        self.kill(execution, TIMEOUT)

    def kill(self, execution: ScanExecution, reason: str) -> bool:
        """
        Externally triggered entry into finalization. Returns False when the
        execution was already killed or already finalized.
        """
        if not execution.mark_killed(reason):
            return False
        logging.info(f"[scan_id={execution.scan_id}] Killing scan ({reason})")
        self._disarm_timer(execution)
        with execution.lock:
            container = execution.container
        if container is not None:
            self._release(container)
        self._finalize(execution, exit_code=None)
        return True

    def _release(self, container):
        self.runtime.stop(container, grace_seconds=0)
        self.runtime.remove(container, force=True)

    def _finalize(self, execution: ScanExecution, exit_code, error=None) -> bool:
        with execution.lock:
            if execution.finalized or not self.registry.remove(execution):
                return False
            execution.finalized = True
            self._disarm_timer(execution)

            duration = execution.elapsed_ms()
            if execution.killed:
                status = FAILED if execution.kill_reason == TIMEOUT else CANCELLED
                outcome = ScanOutcome(status, False, exit_code, duration, KILLED_MESSAGE)
            elif exit_code == 0 and not error:
                outcome = ScanOutcome(COMPLETED, True, exit_code, duration)
            else:
                detail = error or execution.error_output or "Scan failed"
                outcome = ScanOutcome(FAILED, False, exit_code, duration, detail)
            execution.outcome = outcome

            self._persist_outcome(execution, outcome)
            self._publish_outcome(execution, outcome)

        logging.info(f"[scan_id={execution.scan_id}] Scan finished: status={outcome.status} exit_code={exit_code} duration={duration}ms")
        return True

    def _persist_outcome(self, execution: ScanExecution, outcome: ScanOutcome):
        scan_id = execution.scan_id
        if outcome.success:
            self.store.update_status(scan_id, COMPLETED, {
                "execution_result": {"image": execution.image, "container_id": execution.container_id},
                "output_length": len(execution.output),
                "execution_duration": outcome.duration_ms,
                "exit_code": outcome.exit_code,
                "mode": execution.mode,
            })
            self.store.insert_log(scan_id, "info", "Scan completed successfully", f"Execution time: {outcome.duration_ms}ms")
        elif execution.killed:
            self.store.update_status(scan_id, outcome.status, {
                "execution_error": f"{KILLED_MESSAGE} ({execution.kill_reason})",
                "killed": True,
                "kill_reason": execution.kill_reason,
                "execution_duration": outcome.duration_ms,
                "mode": execution.mode,
            })
            self.store.insert_log(scan_id, "error", f"{KILLED_MESSAGE} ({execution.kill_reason})", execution.error_output or KILLED_MESSAGE)
        else:
            self.store.update_status(scan_id, FAILED, {
                "execution_error": outcome.error,
                "execution_duration": outcome.duration_ms,
                "exit_code": outcome.exit_code,
                "mode": execution.mode,
            })
            self.store.insert_log(scan_id, "error", outcome.error, execution.error_output or outcome.error)

    def _publish_outcome(self, execution: ScanExecution, outcome: ScanOutcome):
        scan_id, user_id = execution.scan_id, execution.user_id
        self.publisher.publish_container_status(scan_id, user_id, {
            "containerId": execution.container_id,
            "status": "error" if outcome.status == FAILED and not execution.killed else "stopped",
            "uptime": format_uptime(outcome.duration_ms / 1000),
            "memoryUsage": "Released",
            "cpuUsage": "0%",
        })
        if outcome.success:
            self.publisher.publish_complete(scan_id, user_id, outcome.duration_ms, outcome.exit_code, execution.output)
        else:
            details = {"duration": outcome.duration_ms, "exitCode": outcome.exit_code}
            if execution.killed:
                details["reason"] = execution.kill_reason
            self.publisher.publish_error(scan_id, user_id, outcome.error, details)

    def _result(self, execution: ScanExecution) -> ScanResult:
        outcome = execution.outcome
        if outcome is None:
            return ScanResult(False, FAILED, output=execution.output, error="Scan state was lost before finalization",
                              container_id=execution.container_id or None)
        return ScanResult(
            success=outcome.success,
            status=outcome.status,
            output=execution.output,
            error=outcome.error,
            container_id=execution.container_id or None,
            exit_code=outcome.exit_code,
            duration_ms=outcome.duration_ms,
        )
