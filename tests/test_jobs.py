import sys

import pytest

from lucidcoder.errors import InputValidationError, JobError
from lucidcoder.event_bus import JOB_UPDATED, EventBus
from lucidcoder.jobs import JobRunner, extract_test_summary_lines, parse_test_counts


@pytest.fixture
def runner():
    jobs = JobRunner(max_workers=2)
    yield jobs
    jobs.shutdown()


def test_parse_pytest_counts():
    counts = parse_test_counts(["===== 3 passed, 1 failed, 2 skipped in 0.12s ====="])
    assert counts == {"passed": 3, "failed": 1, "skipped": 2, "total": 6}


def test_parse_jest_counts():
    lines = ["Test Suites: 2 passed, 2 total", "Tests:       1 failed, 4 passed, 5 total"]
    assert parse_test_counts(lines) == {"passed": 4, "failed": 1, "skipped": 0, "total": 5}


def test_extract_summary_lines_strips_ansi():
    lines = extract_test_summary_lines("collected 3 items\n\x1b[32m===== 3 passed in 0.01s =====\x1b[0m")
    assert lines == ["===== 3 passed in 0.01s ====="]


def test_start_requires_configuration(runner):
    with pytest.raises(InputValidationError, match="Missing required job configuration"):
        runner.start(project_id="", type="install", command="x", cwd=".")


def test_job_runs_and_collects_output(runner, tmp_path):
    job = runner.start(
        project_id="demo",
        type="feature-x:test",
        command=sys.executable,
        args=["-c", "print('hello'); print('===== 2 passed in 0.01s =====')"],
        cwd=str(tmp_path),
    )
    finished = runner.wait(job.id, timeout=30)

    assert finished.status == "succeeded"
    assert finished.exit_code == 0
    assert "hello" in [entry.message for entry in finished.logs]
    assert finished.summary["test_summary_lines"] == ["===== 2 passed in 0.01s ====="]
    assert [j.id for j in runner.list_for_project("demo")] == [job.id]


def test_failing_job(runner, tmp_path):
    job = runner.start(
        project_id="demo",
        type="lint",
        command=sys.executable,
        args=["-c", "import sys; sys.stderr.write('bad\\n'); sys.exit(3)"],
        cwd=str(tmp_path),
    )
    finished = runner.wait(job.id, timeout=30)
    assert finished.status == "failed"
    assert finished.exit_code == 3
    assert any(e.stream == "stderr" and e.message == "bad" for e in finished.logs)


def test_spawn_failure_raises_job_error(runner, tmp_path):
    with pytest.raises(JobError):
        runner.start(project_id="demo", type="install", command="definitely-not-a-command-xyz", cwd=str(tmp_path))
    [job] = runner.list_for_project("demo")
    assert job.status == "failed"


def test_cancel_running_job(runner, tmp_path):
    job = runner.start(
        project_id="demo",
        type="dev",
        command=sys.executable,
        args=["-c", "import time; time.sleep(30)"],
        cwd=str(tmp_path),
    )
    cancelled = runner.cancel(job.id)
    assert cancelled.status == "cancelled"

    finished = runner.wait(job.id, timeout=30)
    assert finished.status == "cancelled"
    assert runner.cancel(job.id).status == "cancelled"


def test_cancel_and_wait_unknown_job(runner):
    assert runner.cancel("missing") is None
    with pytest.raises(JobError, match="Job not found"):
        runner.wait("missing", timeout=1)


def test_job_updates_are_broadcast(tmp_path):
    bus = EventBus()
    statuses = []
    bus.subscribe(lambda e: statuses.append(e.payload["status"]), event_type=JOB_UPDATED)
    jobs = JobRunner(bus=bus)
    try:
        job = jobs.start(project_id="demo", type="build", command=sys.executable, args=["-c", "pass"], cwd=str(tmp_path))
        jobs.wait(job.id, timeout=30)
    finally:
        jobs.shutdown()
    assert statuses[0] == "running"
    assert "succeeded" in statuses
