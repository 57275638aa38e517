# src/engine/job_manager.py
"""
JobManager: runs scans in background threads and tracks their in-memory results.
"""

import threading
from typing import Dict, Any
import logging

from engine.models import FAILED, QUEUED
from engine.scan_engine import REJECTED


# one worker thread per submitted scan
class JobManager:
    def __init__(self, engine):
        self.engine = engine
        self.jobs: Dict[str, dict] = {}
        self.lock = threading.Lock()

    def submit_job(self, scan_id: str, resolved, user_id: str, timeout_ms=None) -> str:
        """
        Queue a resolved command. Admission errors (shutdown, bad timeout, active
        or finished scan) propagate to the caller before anything is persisted.
        """
        timeout_ms = self.engine.admit(scan_id, timeout_ms)
        self.engine.store.create_scan(scan_id, user_id=user_id, tool=resolved.tool.value, command=resolved.command_line)
        self.engine.store.update_status(scan_id, QUEUED)
        thread = threading.Thread(
            target=self._run_job,
            args=(scan_id, resolved, user_id, timeout_ms),
            name=f"scan-job-{scan_id}",
            daemon=True,
        )
        with self.lock:
            self.jobs[scan_id] = {"status": QUEUED, "result": None, "thread": thread}
        logging.info(f"[scan_id={scan_id}] Submitted scan job. user_id={user_id} command={resolved.command_line}")
        thread.start()
        return scan_id

    def _run_job(self, scan_id, resolved, user_id, timeout_ms):
        try:
            result = self.engine.run(scan_id, resolved, user_id, timeout_ms)
            with self.lock:
                self.jobs[scan_id]["status"] = result.status
                self.jobs[scan_id]["result"] = result.to_dict()
            if result.status == REJECTED:
                self._fail_queued(scan_id, result.error)
            logging.info(f"[scan_id={scan_id}] Scan job finished. status={result.status}")
        except Exception as e:
            with self.lock:
                self.jobs[scan_id]["status"] = FAILED
                self.jobs[scan_id]["result"] = {"success": False, "error": str(e)}
            self._fail_queued(scan_id, str(e))
            logging.error(f"[scan_id={scan_id}] Scan job failed: {e}")

    def _fail_queued(self, scan_id: str, error: str):
        # only this job's own queued record; an execution that got further owns its status
        if self.engine.store.get_status(scan_id) != QUEUED:
            return
        self.engine.store.update_status(scan_id, FAILED, {"execution_error": error, "mode": self.engine.mode})
        self.engine.store.insert_log(scan_id, "error", f"Scan job rejected: {error}", error)

    def get_status(self, scan_id) -> dict:
        record = self.engine.store.get_scan(scan_id)
        with self.lock:
            job = self.jobs.get(scan_id)
            result = job["result"] if job else None
        if record:
            record["result"] = result
            record["active"] = scan_id in self.engine.registry
            return record
        return {"status": "not_found", "result": None}

    def join(self, timeout: float = None) -> None:
        with self.lock:
            threads = [job["thread"] for job in self.jobs.values()]
        for thread in threads:
            thread.join(timeout)
