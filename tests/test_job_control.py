"""Tests for the job table and the SIGCHLD reaper."""

import io
import os
import signal

import psutil
import pytest

from jobshell.job_control import (
    Job,
    JobProcess,
    JobStatus,
    JobTable,
    cleanup_jobs,
    show_jobs,
    sigchld_blocked,
)

# Raw waitpid() status words, Linux encoding
EXITED_0 = 0
EXITED_1 = 1 << 8
KILLED = signal.SIGKILL
STOPPED = (signal.SIGTSTP << 8) | 0x7F
CONTINUED = 0xFFFF


def spawn(*args):
    """Start a child without a Popen object, in its own process group."""
    pid = os.posix_spawnp(args[0], list(args), os.environ, setpgroup=0)
    return pid


def register(jobs, *pids, text="test", status=JobStatus.RUNNING):
    processes = [JobProcess(pid, ["test"]) for pid in pids]
    return jobs.get(jobs.add(pids[0], text, status, processes))


class TestJobTable:
    """Ids, lookup, listing order and pruning."""

    def test_ids_increase(self):
        table = JobTable()
        assert table.add(100, "a", JobStatus.RUNNING) == 1
        assert table.add(200, "b", JobStatus.STOPPED) == 2

    def test_ids_are_never_reused(self):
        table = JobTable()
        first = table.add(100, "a", JobStatus.DONE)
        table.prune_done()
        assert table.add(200, "b", JobStatus.RUNNING) == first + 1

    def test_find_by_id(self):
        table = JobTable()
        table.add(100, "a", JobStatus.RUNNING)
        second = table.add(200, "b", JobStatus.RUNNING)
        assert table.find_by_id(second) == 1
        assert table.find_by_id(42) is None
        assert table.get(42) is None

    def test_find_by_pid(self):
        table = JobTable()
        job_id = table.add(100, "a | b", JobStatus.RUNNING,
                           [JobProcess(100, ["a"]), JobProcess(101, ["b"])])
        assert table.find_by_pid(101).id == job_id
        assert table.find_by_pid(999) is None

    def test_list_keeps_insertion_order(self):
        table = JobTable()
        for pgid, text in [(3, "c"), (1, "a"), (2, "b")]:
            table.add(pgid, text, JobStatus.RUNNING)
        assert [job.text for job in table.list()] == ["c", "a", "b"]

    def test_prune_done_removes_only_done_jobs(self):
        table = JobTable()
        table.add(1, "running", JobStatus.RUNNING)
        done_id = table.add(2, "done", JobStatus.DONE)
        table.add(3, "stopped", JobStatus.STOPPED)
        removed = table.prune_done()
        assert [job.id for job in removed] == [done_id]
        assert [job.text for job in table.list()] == ["running", "stopped"]


class TestJobStatus:
    """Job status follows its member processes."""

    def _job(self):
        return Job(1, 10, "a | b", JobStatus.RUNNING,
                   [JobProcess(10, ["a"]), JobProcess(11, ["b"])])

    def test_unknown_pid_is_ignored(self):
        job = self._job()
        assert job.record(99, EXITED_0) is False
        assert job.status is JobStatus.RUNNING

    def test_done_only_when_every_member_exits(self):
        job = self._job()
        job.record(10, EXITED_0)
        assert job.status is JobStatus.RUNNING
        job.record(11, KILLED)
        assert job.status is JobStatus.DONE
        assert [p.returncode for p in job.processes] == [0, -signal.SIGKILL]

    def test_stop_and_continue(self):
        job = self._job()
        job.record(11, STOPPED)
        assert job.status is JobStatus.STOPPED
        job.record(11, CONTINUED)
        assert job.status is JobStatus.RUNNING

    def test_exit_status_recorded(self):
        job = self._job()
        job.record(10, EXITED_1)
        assert job.processes[0].returncode == 1

    def test_resume_clears_stopped_members(self):
        job = self._job()
        job.record(10, STOPPED)
        job.record(11, STOPPED)
        job.resume()
        assert job.status is JobStatus.RUNNING


class TestSignalReaper:
    """Draining child state changes into the table."""

    def test_drains_every_pending_exit(self, jobs, reaper, wait_until):
        first = register(jobs, spawn("true"), text="true")
        second = register(jobs, spawn("true"), text="true")
        pids = [first.pgid, second.pgid]
        # Both exited and are waiting to be reaped before a single pass
        assert wait_until(lambda: all(
            psutil.Process(pid).status() == psutil.STATUS_ZOMBIE for pid in pids))

        assert reaper.reap() == 2
        assert first.status is JobStatus.DONE
        assert second.status is JobStatus.DONE

    def test_nothing_pending(self, reaper):
        assert reaper.reap() == 0

    def test_unknown_child_is_discarded(self, jobs, reaper, wait_until):
        pid = spawn("true")
        assert wait_until(lambda: psutil.Process(pid).status() == psutil.STATUS_ZOMBIE)
        assert reaper.reap() == 1
        assert len(jobs) == 0
        assert not psutil.pid_exists(pid)

    def test_stop_continue_and_kill(self, jobs, reaper, wait_until):
        job = register(jobs, spawn("sleep", "30"), text="sleep 30")

        os.killpg(job.pgid, signal.SIGSTOP)
        assert wait_until(lambda: reaper.reap() >= 0 and job.status is JobStatus.STOPPED)

        os.killpg(job.pgid, signal.SIGCONT)
        assert wait_until(lambda: reaper.reap() >= 0 and
                          job.processes[0].state is JobStatus.RUNNING)
        assert job.status is JobStatus.RUNNING

        os.killpg(job.pgid, signal.SIGKILL)
        assert wait_until(lambda: reaper.reap() >= 0 and job.is_done())
        assert jobs.get(job.id) is job

    def test_install_and_uninstall(self, reaper):
        before = signal.getsignal(signal.SIGCHLD)
        reaper.install()
        try:
            assert signal.getsignal(signal.SIGCHLD) == reaper.handle_sigchld
        finally:
            reaper.uninstall()
        assert signal.getsignal(signal.SIGCHLD) == before


class TestSigchldBlocked:

    def test_mask_is_restored(self):
        assert signal.SIGCHLD not in signal.pthread_sigmask(signal.SIG_BLOCK, [])
        with sigchld_blocked():
            assert signal.SIGCHLD in signal.pthread_sigmask(signal.SIG_BLOCK, [])
        assert signal.SIGCHLD not in signal.pthread_sigmask(signal.SIG_BLOCK, [])

    def test_mask_is_restored_on_error(self):
        with pytest.raises(RuntimeError):
            with sigchld_blocked():
                raise RuntimeError("boom")
        assert signal.SIGCHLD not in signal.pthread_sigmask(signal.SIG_BLOCK, [])


class TestShowJobs:

    def test_one_line_per_job(self):
        table = JobTable()
        table.add(100, "sleep 5", JobStatus.RUNNING)
        table.add(200, "vim notes.txt", JobStatus.STOPPED)
        out = io.StringIO()
        show_jobs(table, out=out)
        assert out.getvalue() == (
            "[1] Running\t\tsleep 5\n"
            "[2] Stopped\t\tvim notes.txt\n"
        )

    def test_long_listing_shows_members(self, jobs):
        job = register(jobs, spawn("sleep", "30"), text="sleep 30")
        out = io.StringIO()
        show_jobs(jobs, long=True, out=out)
        lines = out.getvalue().splitlines()
        assert lines[0] == f"[{job.id}] Running\t\tsleep 30"
        assert lines[1].split()[0] == str(job.pgid)

    def test_long_listing_of_finished_member(self):
        table = JobTable()
        table.add(100, "true", JobStatus.DONE,
                  [JobProcess(100, ["true"], state=JobStatus.DONE)])
        out = io.StringIO()
        show_jobs(table, long=True, out=out)
        assert "exited" in out.getvalue()


class TestCleanupJobs:

    def test_stopped_jobs_are_hung_up(self, jobs, reaper, wait_until):
        job = register(jobs, spawn("sleep", "30"), text="sleep 30")
        os.killpg(job.pgid, signal.SIGSTOP)
        assert wait_until(lambda: reaper.reap() >= 0 and job.status is JobStatus.STOPPED)

        cleanup_jobs(jobs)
        assert wait_until(lambda: reaper.reap() >= 0 and job.is_done())

    def test_running_jobs_are_left_alone(self, jobs):
        job = register(jobs, spawn("sleep", "30"), text="sleep 30")
        cleanup_jobs(jobs)
        assert psutil.Process(job.pgid).status() != psutil.STATUS_ZOMBIE
