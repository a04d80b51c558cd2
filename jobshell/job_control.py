import os
import signal
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import psutil

from jobshell.logger import get_logger

log = get_logger(__name__)


class JobStatus(Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    DONE = "Done"


@dataclass
class JobProcess:
    pid: int
    args: List[str]
    state: JobStatus = JobStatus.RUNNING
    returncode: Optional[int] = None
    # Popen that started the process; kept so subprocess never polls the
    # pid behind the reaper's back
    handle: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    def finish(self, returncode):
        self.state = JobStatus.DONE
        self.returncode = returncode
        if self.handle is not None and returncode is not None:
            self.handle.returncode = returncode


@dataclass
class Job:
    """
    Bookkeeping for one launched process group.
    id is None until the job is registered in a JobTable.
    """
    id: Optional[int]
    pgid: int
    text: str
    status: JobStatus = JobStatus.RUNNING
    processes: List[JobProcess] = field(default_factory=list)

    def owns(self, pid):
        return any(proc.pid == pid for proc in self.processes)

    def record(self, pid, wait_status):
        """
        Apply one waitpid() status reported for member pid.
        Returns: True if pid belongs to this job
        """
        for proc in self.processes:
            if proc.pid == pid:
                break
        else:
            return False

        if os.WIFSTOPPED(wait_status):
            proc.state = JobStatus.STOPPED
        elif os.WIFCONTINUED(wait_status):
            proc.state = JobStatus.RUNNING
        elif os.WIFEXITED(wait_status) or os.WIFSIGNALED(wait_status):
            proc.finish(os.waitstatus_to_exitcode(wait_status))
        self.refresh()
        return True

    def resume(self):
        """Mark stopped members running again after SIGCONT."""
        for proc in self.processes:
            if proc.state is JobStatus.STOPPED:
                proc.state = JobStatus.RUNNING
        self.refresh()

    def refresh(self):
        states = [proc.state for proc in self.processes]
        if all(state is JobStatus.DONE for state in states):
            self.status = JobStatus.DONE
        elif JobStatus.STOPPED in states:
            self.status = JobStatus.STOPPED
        else:
            self.status = JobStatus.RUNNING

    def is_done(self):
        return self.status is JobStatus.DONE


class JobTable:
    """
    Process groups launched by the shell and not yet pruned.

    Entries are added and removed only by the main flow, with SIGCHLD
    blocked. The SIGCHLD handler only changes status fields of entries
    that already exist.
    """

    def __init__(self):
        self._jobs = []
        self._next_id = 1

    def __len__(self):
        return len(self._jobs)

    def add(self, pgid, text, status, processes=()):
        """Register a process group. Returns: the new job id."""
        return self.register(Job(None, pgid, text, status, list(processes)))

    def register(self, job):
        """Give an unregistered Job the next id and append it. Returns: the id."""
        job.id = self._next_id
        self._next_id += 1
        self._jobs.append(job)
        log.debug("job [%d] added: pgid=%d status=%s", job.id, job.pgid, job.status.value)
        return job.id

    def find_by_id(self, job_id):
        """Returns: index of the job in the table, or None."""
        for i, job in enumerate(self._jobs):
            if job.id == job_id:
                return i
        return None

    def get(self, job_id):
        idx = self.find_by_id(job_id)
        return None if idx is None else self._jobs[idx]

    def find_by_pid(self, pid):
        for job in self._jobs:
            if job.owns(pid):
                return job
        return None

    def list(self):
        return list(self._jobs)

    def prune_done(self):
        """Drop finished jobs. Returns: the removed jobs."""
        done = [job for job in self._jobs if job.is_done()]
        if done:
            self._jobs[:] = [job for job in self._jobs if not job.is_done()]
        return done


@contextmanager
def sigchld_blocked():
    """Hold SIGCHLD delivery for the duration of the block."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, {signal.SIGCHLD})
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


class SignalReaper:
    """
    SIGCHLD handler that collects every pending child state change and
    records it on the owning job.

    Runs at arbitrary points of the main flow, so it only assigns status
    fields: no printing, no logging, no table insertions or removals.
    """

    WAIT_FLAGS = os.WNOHANG | os.WUNTRACED | os.WCONTINUED

    def __init__(self, jobs):
        self.jobs = jobs
        self._previous = None

    def install(self):
        self._previous = signal.signal(signal.SIGCHLD, self.handle_sigchld)

    def uninstall(self):
        if self._previous is not None:
            signal.signal(signal.SIGCHLD, self._previous)
            self._previous = None

    def handle_sigchld(self, signum, frame):
        self.reap()

    def reap(self):
        """
        Drain all pending notifications without blocking.
        Several children may change state before one SIGCHLD is delivered.
        Returns: number of notifications collected
        """
        count = 0
        while True:
            try:
                pid, status = os.waitpid(-1, self.WAIT_FLAGS)
            except ChildProcessError:
                break
            if pid == 0:
                break
            count += 1
            # Unknown pids belong to a foreground wait or a failed exec
            job = self.jobs.find_by_pid(pid)
            if job is not None:
                job.record(pid, status)
        return count


def format_job(job):
    return f"[{job.id}] {job.status.value}\t\t{job.text}"


def _process_state(proc):
    if proc.state is JobStatus.DONE:
        return "exited"
    try:
        return psutil.Process(proc.pid).status()
    except psutil.NoSuchProcess:
        return "terminated"
    except psutil.AccessDenied:
        return "unknown"


def show_jobs(jobs, long=False, out=None):
    """Print the job table, one line per job (plus members with long=True)."""
    out = out or sys.stdout
    for job in jobs.list():
        print(format_job(job), file=out)
        if not long:
            continue
        for proc in job.processes:
            state = _process_state(proc)
            print(f"    {proc.pid:<8} {state:<10} {' '.join(proc.args)}", file=out)


def cleanup_jobs(jobs):
    """Hang up stopped jobs on exit so they are not left suspended."""
    for job in jobs.list():
        if job.status is not JobStatus.STOPPED:
            continue
        try:
            os.killpg(job.pgid, signal.SIGHUP)
            os.killpg(job.pgid, signal.SIGCONT)
            log.debug("hung up stopped job [%d] (pgid %d)", job.id, job.pgid)
        except ProcessLookupError:
            pass
