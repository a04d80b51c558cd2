import os
import signal
import sys
import termios
from contextlib import contextmanager

from jobshell.config import JOB_CONTROL_SIGNALS
from jobshell.errors import JobControlError, JobNotFoundError
from jobshell.job_control import JobStatus, format_job, sigchld_blocked
from jobshell.logger import get_logger

log = get_logger(__name__)


class TerminalController:
    """
    Owner of the controlling terminal and of the wait-or-detach decision.

    With tty_fd=None (stdin is not a terminal) there is no terminal
    handoff; processes are still grouped and waited on the same way.
    """

    def __init__(self, tty_fd=None, shell_pgid=None):
        self.tty_fd = tty_fd
        self.shell_pgid = shell_pgid if shell_pgid is not None else os.getpgrp()
        self.shell_modes = None

    @property
    def enabled(self):
        return self.tty_fd is not None

    @classmethod
    def init_shell(cls, fd=0):
        """
        Prepare the shell for job control.
        Not running on a terminal is not an error: handoff is simply off.
        """
        if not os.isatty(fd):
            log.info("stdin is not a terminal, job control handoff disabled")
            return cls()

        # The shell keeps the terminal; children restore these to default
        for sig in JOB_CONTROL_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        # Only the foreground group gets Ctrl-C, so the shell sees it at the prompt
        signal.signal(signal.SIGINT, signal.default_int_handler)

        shell_pid = os.getpid()
        try:
            os.setpgid(shell_pid, shell_pid)
        except PermissionError as e:
            # Session leaders cannot change group; they already lead one
            log.debug("setpgid: %s", e)

        # Children get their own fd 0 before they hand the terminal over;
        # this copy stays open in them until exec
        tty_fd = os.dup(fd)
        ctl = cls(tty_fd, os.getpgrp())
        try:
            os.tcsetpgrp(tty_fd, ctl.shell_pgid)
            ctl.shell_modes = termios.tcgetattr(tty_fd)
        except (OSError, termios.error) as e:
            log.warning("could not take the terminal: %s", e)
            os.close(tty_fd)
            ctl.tty_fd = None
        return ctl

    def give_terminal(self, pgid):
        if not self.enabled:
            return
        try:
            os.tcsetpgrp(self.tty_fd, pgid)
        except OSError as e:
            log.warning("could not move process group %d to foreground: %s", pgid, e)

    def take_terminal(self):
        if not self.enabled:
            return
        try:
            os.tcsetpgrp(self.tty_fd, self.shell_pgid)
            if self.shell_modes is not None:
                termios.tcsetattr(self.tty_fd, termios.TCSADRAIN, self.shell_modes)
        except (OSError, termios.error) as e:
            log.warning("could not restore the terminal: %s", e)

    @contextmanager
    def foreground(self, pgid):
        """Hand the terminal to pgid; always give it back to the shell."""
        self.give_terminal(pgid)
        try:
            yield
        finally:
            self.take_terminal()

    def wait_for_job(self, job):
        """
        Block until every member of job has exited or one of them stops.
        Call with SIGCHLD blocked so the reaper cannot take the statuses.
        Returns: the resulting JobStatus
        """
        while not job.is_done():
            try:
                pid, status = os.waitpid(-job.pgid, os.WUNTRACED)
            except ChildProcessError:
                # Nothing left to wait for in the group
                for proc in job.processes:
                    if proc.state is not JobStatus.DONE:
                        proc.finish(None)
                job.refresh()
                break
            job.record(pid, status)
            if os.WIFSTOPPED(status):
                break
        return job.status

    def run_foreground(self, job, jobs):
        """
        Wait for a freshly spawned group that owns the terminal.
        A stopped group becomes a Stopped job; a finished one leaves no trace.
        """
        with self.foreground(job.pgid):
            status = self.wait_for_job(job)

        if status is JobStatus.STOPPED:
            jobs.register(job)
            print()
            print(format_job(job))
        return status

    def launch_background(self, job, jobs):
        job.status = JobStatus.RUNNING
        jobs.register(job)
        print(f"[{job.id}] {job.pgid}", flush=True)
        return job.id

    def foreground_job(self, jobs, job_id, cont=True):
        """fg: resume a job with the terminal and wait for its next change."""
        job = jobs.get(job_id)
        if job is None:
            raise JobNotFoundError("fg", job_id)
        if job.is_done():
            raise JobControlError(f"fg: %{job_id}: job has terminated")

        print(job.text, flush=True)
        with sigchld_blocked():
            with self.foreground(job.pgid):
                if cont:
                    self._continue(job)
                status = self.wait_for_job(job)
        log.debug("fg job [%d] -> %s", job.id, status.value)
        if status is JobStatus.STOPPED:
            print()
            print(format_job(job))
        return status

    def background_job(self, jobs, job_id, cont=True):
        """bg: resume a job without the terminal or waiting."""
        job = jobs.get(job_id)
        if job is None:
            raise JobNotFoundError("bg", job_id)
        if job.is_done():
            raise JobControlError(f"bg: %{job_id}: job has terminated")

        if cont:
            self._continue(job)
        job.status = JobStatus.RUNNING
        print(f"[{job.id}] {job.text} &", flush=True)
        return job.status

    def _continue(self, job):
        try:
            os.killpg(job.pgid, signal.SIGCONT)
        except ProcessLookupError as e:
            raise JobControlError(f"kill (SIGCONT): {e.strerror}") from e
        job.resume()


def stdin_fd():
    try:
        return sys.stdin.fileno()
    except (AttributeError, ValueError, OSError):
        return None
