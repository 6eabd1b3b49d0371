"""Best-effort outbox for remote statistics writes.

Jobs run on daemon threads. A failing job is logged and recorded as
`failed`; nothing is retried and the caller's local commit is never
touched.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger("certano.sync")


class SyncOutbox:
    def __init__(self, max_jobs: int = 500, ttl_seconds: int = 3600):
        self._jobs: dict[str, dict] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs
        self._ttl_seconds = ttl_seconds

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict:
        self._cleanup()
        job_id = uuid.uuid4().hex
        job = {
            "job_id": job_id,
            "name": name,
            "status": "queued",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "finished_at": None,
            "error": None,
        }
        thread = threading.Thread(
            target=self._run_job,
            kwargs={"job_id": job_id, "fn": fn, "args": args, "kwargs": kwargs},
            daemon=True,
        )
        with self._lock:
            self._jobs[job_id] = job
            self._threads[job_id] = thread
            if len(self._jobs) > self._max_jobs:
                finished = sorted(
                    (j for j in self._jobs.values() if j.get("finished_at")),
                    key=lambda x: x.get("finished_at") or "",
                )
                for old in finished[: max(0, len(self._jobs) - self._max_jobs)]:
                    self._jobs.pop(old["job_id"], None)
                    self._threads.pop(old["job_id"], None)
        thread.start()
        return {"job_id": job_id, "status": "queued"}

    def get(self, job_id: str) -> Optional[dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def failed(self) -> list[dict]:
        with self._lock:
            return [dict(j) for j in self._jobs.values() if j["status"] == "failed"]

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait for queued jobs to finish. Returns False if the timeout elapsed first."""
        deadline = time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)

    def _run_job(self, *, job_id: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        with self._lock:
            if job_id not in self._jobs:
                return
            self._jobs[job_id]["status"] = "running"
            name = self._jobs[job_id]["name"]
        try:
            fn(*args, **kwargs)
            status, error = "succeeded", None
        except Exception as exc:
            status, error = "failed", str(exc)
            logger.exception("sync_failed %s", json.dumps({"job_id": job_id, "name": name}, ensure_ascii=True))
        with self._lock:
            self._threads.pop(job_id, None)
            if job_id in self._jobs:
                self._jobs[job_id]["status"] = status
                self._jobs[job_id]["error"] = error
                self._jobs[job_id]["finished_at"] = datetime.now(timezone.utc).isoformat()

    def _cleanup(self) -> None:
        cutoff = time.time() - self._ttl_seconds
        with self._lock:
            to_delete = []
            for job_id, job in self._jobs.items():
                finished = job.get("finished_at")
                if not finished:
                    continue
                if datetime.fromisoformat(finished).timestamp() < cutoff:
                    to_delete.append(job_id)
            for job_id in to_delete:
                self._jobs.pop(job_id, None)
