import os
import signal
import time

import psutil
import pytest

from jobshell.job_control import JobStatus, JobTable, SignalReaper
from jobshell.terminal import TerminalController


def _reap_job(job):
    for proc in job.processes:
        if proc.state is JobStatus.DONE:
            continue
        try:
            _pid, status = os.waitpid(proc.pid, 0)
            proc.finish(os.waitstatus_to_exitcode(status))
        except ChildProcessError:
            proc.finish(None)


def _is_our_child(pid):
    try:
        return psutil.Process(pid).ppid() == os.getpid()
    except psutil.NoSuchProcess:
        return False


def kill_job(job):
    """SIGKILL a job's whole group and reap its members."""
    # Tables in tests also hold made-up pgids; only touch real children
    if not any(proc.pid == job.pgid and _is_our_child(proc.pid) for proc in job.processes):
        return
    try:
        os.killpg(job.pgid, signal.SIGKILL)
        os.killpg(job.pgid, signal.SIGCONT)
    except ProcessLookupError:
        pass
    _reap_job(job)
    job.refresh()


@pytest.fixture
def jobs():
    table = JobTable()
    yield table
    for job in table.list():
        if not job.is_done():
            kill_job(job)


@pytest.fixture
def reaper(jobs):
    """A reaper bound to the jobs table, driven by hand (no handler installed)."""
    return SignalReaper(jobs)


@pytest.fixture
def terminal():
    """Controller without a terminal: no handoff, same grouping and waiting."""
    return TerminalController(tty_fd=None)


@pytest.fixture
def wait_until():
    def _wait_until(predicate, timeout=5.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_until
