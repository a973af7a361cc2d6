"""
Lucid Coder Job Runner

Runs install/lint/test commands as child processes on a worker pool.
Each job keeps a rolling log of its stdout/stderr and a terminal status
(succeeded, failed, cancelled). Test jobs (type ending in ':test') also
collect the framework's summary lines so callers can count results.

The runner is an ordinary object: construct one per process and pass it
to whatever needs it.
"""

from __future__ import annotations

import concurrent.futures
import os
import re
import subprocess
import threading
import uuid
from typing import IO, Any, Literal

from loguru import logger
from pydantic import BaseModel, Field

from lucidcoder.errors import InputValidationError, JobError
from lucidcoder.event_bus import JOB_UPDATED, EventBus
from lucidcoder.state import utc_now

MAX_LOG_ENTRIES = 500
MAX_TEST_SUMMARY_LINES = 6

JobStatus = Literal["pending", "running", "succeeded", "failed", "cancelled"]
TERMINAL_STATUSES = ("succeeded", "failed", "cancelled")

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_TEST_SUMMARY_LINE_RE = re.compile(
    r"^\s*(Test Suites:|Tests:|Snapshots:|Time:|Ran all test suites\.|Test Files\s+|Duration\s+|=+ .*(passed|failed|error|skipped).* in )",
    re.IGNORECASE,
)
_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed|skipped|errors?|total)", re.IGNORECASE)


class JobLogEntry(BaseModel):
    stream: Literal["stdout", "stderr"]
    message: str
    timestamp: str = Field(default_factory=utc_now)


class Job(BaseModel):
    id: str
    project_id: str
    type: str
    display_name: str
    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str
    status: JobStatus = "pending"
    created_at: str = Field(default_factory=utc_now)
    started_at: str | None = None
    completed_at: str | None = None
    exit_code: int | None = None
    logs: list[JobLogEntry] = Field(default_factory=list)
    summary: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_test_job(self) -> bool:
        return self.type.endswith(":test")

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Test output helpers
# ---------------------------------------------------------------------------

def strip_ansi(value: str) -> str:
    return _ANSI_RE.sub("", value or "")


def extract_test_summary_lines(message: str) -> list[str]:
    matched = []
    for line in message.splitlines():
        cleaned = strip_ansi(line).rstrip()
        if cleaned and _TEST_SUMMARY_LINE_RE.search(cleaned):
            matched.append(cleaned)
    return matched


def parse_test_counts(lines: list[str]) -> dict[str, int]:
    """
    Pull passed/failed/skipped/total counts out of pytest or jest summary lines.

    pytest:  "===== 3 passed, 1 failed, 2 skipped in 0.12s ====="
    jest:    "Tests:       1 failed, 4 passed, 5 total"
    """
    counts = {"passed": 0, "failed": 0, "skipped": 0, "total": 0}
    for line in lines:
        if line.lstrip().lower().startswith(("test suites:", "test files")):
            continue
        for number, label in _COUNT_RE.findall(line):
            label = label.lower()
            if label.startswith("error"):
                label = "failed"
            counts[label] = max(counts[label], int(number))
    if not counts["total"]:
        counts["total"] = counts["passed"] + counts["failed"] + counts["skipped"]
    return counts


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class JobRunner:
    """Spawns and tracks child-process jobs."""

    def __init__(self, max_workers: int = 4, bus: EventBus | None = None):
        self.bus = bus
        self._jobs: dict[str, Job] = {}
        self._processes: dict[str, subprocess.Popen] = {}
        self._done: dict[str, threading.Event] = {}
        self._lock = threading.RLock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lucidcoder-job"
        )

    def start(
        self,
        project_id: str,
        type: str,
        command: str,
        cwd: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        display_name: str | None = None,
    ) -> Job:
        if not project_id or not type or not command or not cwd:
            raise InputValidationError("Missing required job configuration")

        job = Job(
            id=str(uuid.uuid4()),
            project_id=str(project_id),
            type=type,
            display_name=display_name or type,
            command=command,
            args=list(args or []),
            cwd=str(cwd),
        )
        done = threading.Event()
        with self._lock:
            self._jobs[job.id] = job
            self._done[job.id] = done

        try:
            process = subprocess.Popen(
                [command, *job.args],
                cwd=cwd,
                env={**os.environ, **(env or {})},
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            with self._lock:
                self._push_log(job, "stderr", str(e) or "Job failed")
                job.status = "failed"
                job.completed_at = utc_now()
            done.set()
            self._emit(job)
            logger.error(f"[JOBS] Failed to start {job.display_name}: {e}")
            raise JobError(f"Failed to start {job.display_name}: {e}") from e

        with self._lock:
            self._processes[job.id] = process
            job.status = "running"
            job.started_at = utc_now()

        logger.info(f"[JOBS] Started {job.display_name}: {command} {' '.join(job.args)}")
        self._emit(job)
        self._executor.submit(self._supervise, job.id, process)
        return self.get(job.id)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_for_project(self, project_id: str) -> list[Job]:
        with self._lock:
            return [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if job.project_id == str(project_id)
            ]

    def wait(self, job_id: str, timeout: float | None = 600) -> Job:
        with self._lock:
            done = self._done.get(job_id)
        if done is None:
            raise JobError("Job not found")
        if not done.wait(timeout):
            raise JobError("Timed out waiting for job completion")
        return self.get(job_id)

    def cancel(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.finished:
                return job.model_copy(deep=True)

            process = self._processes.pop(job_id, None)
            if process is not None and process.poll() is None:
                try:
                    process.terminate()
                except OSError as e:
                    self._push_log(job, "stderr", str(e))

            job.status = "cancelled"
            job.completed_at = utc_now()
            self._done[job_id].set()

        logger.info(f"[JOBS] Cancelled {job.display_name}")
        self._emit(job)
        return self.get(job_id)

    def shutdown(self) -> None:
        for job_id in list(self._processes):
            self.cancel(job_id)
        self._executor.shutdown(wait=False)

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _supervise(self, job_id: str, process: subprocess.Popen) -> None:
        stderr_reader = threading.Thread(
            target=self._pump, args=(job_id, "stderr", process.stderr), daemon=True
        )
        stderr_reader.start()
        self._pump(job_id, "stdout", process.stdout)
        exit_code = process.wait()
        stderr_reader.join(timeout=5)

        with self._lock:
            self._processes.pop(job_id, None)
            job = self._jobs[job_id]
            job.exit_code = exit_code
            # A cancelled job stays cancelled whatever the exit code
            if job.status != "cancelled":
                job.status = "succeeded" if exit_code == 0 else "failed"
                job.completed_at = utc_now()

        logger.info(f"[JOBS] {job.display_name} finished: {job.status} (exit {exit_code})")
        self._emit(job)
        self._done[job_id].set()

    def _pump(self, job_id: str, stream: str, pipe: IO[str] | None) -> None:
        if pipe is None:
            return
        for line in pipe:
            with self._lock:
                self._push_log(self._jobs[job_id], stream, line)
        pipe.close()

    @staticmethod
    def _push_log(job: Job, stream: str, chunk: str) -> None:
        if not chunk or not chunk.strip():
            return
        message = chunk.rstrip()
        job.logs.append(JobLogEntry(stream=stream, message=message))
        if len(job.logs) > MAX_LOG_ENTRIES:
            del job.logs[: len(job.logs) - MAX_LOG_ENTRIES]

        if job.is_test_job:
            lines = job.summary.setdefault("test_summary_lines", [])
            for line in extract_test_summary_lines(message):
                if len(lines) >= MAX_TEST_SUMMARY_LINES:
                    break
                if line not in lines:
                    lines.append(line)

    def _emit(self, job: Job) -> None:
        if self.bus is None:
            return
        snapshot = self.get(job.id)
        self.bus.emit(JOB_UPDATED, "jobs", {"job_id": job.id, "status": snapshot.status if snapshot else job.status})
