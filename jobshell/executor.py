import errno
import os
import signal
import subprocess
import sys
from functools import partial

from jobshell.config import (
    EXIT_CANNOT_EXEC,
    EXIT_NOT_FOUND,
    JOB_CONTROL_SIGNALS,
    REDIRECT_MODE,
)
from jobshell.errors import ExecError, LaunchError
from jobshell.job_control import Job, JobProcess, JobStatus, sigchld_blocked
from jobshell.logger import get_logger
from jobshell.parser import pipeline_text

log = get_logger(__name__)


def prepare_child(pgid, tty_fd=None):
    """
    Runs in the child between fork and exec.
    pgid=0 makes the child the leader of a new group. With tty_fd (the
    shell's own terminal fd, still open until exec) the group takes the
    terminal before the program can read from it.
    """
    os.setpgid(0, pgid)
    if tty_fd is not None:
        # SIGTTOU is still ignored here, so a not-yet-foreground group may do this
        try:
            os.tcsetpgrp(tty_fd, os.getpgrp())
        except OSError:
            # The shell gives the terminal again after the launch
            pass
    for sig in JOB_CONTROL_SIGNALS:
        signal.signal(sig, signal.SIG_DFL)
    # The mask is inherited across exec; the shell holds SIGCHLD while launching
    signal.pthread_sigmask(signal.SIG_UNBLOCK, {signal.SIGCHLD})


def run_external(args, stdin=None, stdout=None, pgid=0, tty_fd=None):
    """
    Start one program in process group pgid.
    tty_fd is given for foreground launches on a terminal.
    Returns: Popen object, once the program has been exec'd
    Raises: ExecError if the program cannot run, LaunchError if no process
            could be created at all
    """
    try:
        return subprocess.Popen(
            args,
            stdin=stdin,
            stdout=stdout,
            preexec_fn=partial(prepare_child, pgid, tty_fd),
        )
    except subprocess.SubprocessError as e:
        raise ExecError(args[0], str(e), EXIT_CANNOT_EXEC) from e
    except OSError as e:
        # Errors raised by exec carry the program as filename; fork errors don't
        if e.filename is None:
            raise LaunchError(f"fork: {e.strerror or e}") from e
        if e.errno == errno.ENOENT:
            raise ExecError(args[0], "command not found", EXIT_NOT_FOUND) from e
        raise ExecError(args[0], e.strerror, EXIT_CANNOT_EXEC) from e


def close_fds(fds):
    for fd in fds:
        try:
            os.close(fd)
        except OSError as e:
            log.debug("close(%d): %s", fd, e)


def create_pipes(count):
    """Allocate every pipe up front; on failure none is left open."""
    pipes = []
    try:
        for _ in range(count):
            pipes.append(os.pipe())
    except OSError as e:
        close_fds(fd for pair in pipes for fd in pair)
        raise LaunchError(f"pipe: {e.strerror}") from e
    return pipes


def open_redirect(path, flags):
    try:
        return os.open(os.path.expanduser(path), flags, REDIRECT_MODE)
    except OSError as e:
        raise ExecError(path, e.strerror, 1) from e


def spawn_stage(cmd, idx, pipes, pgid, tty_fd=None):
    """Wire stage idx to its neighbours (or its redirect files) and start it."""
    last = len(pipes)
    stdin = pipes[idx - 1][0] if idx > 0 else None
    stdout = pipes[idx][1] if idx < last else None

    if cmd.input_path is not None and idx != 0:
        log.warning("%s: input redirect ignored after the first stage", cmd.input_path)
    if cmd.output_path is not None and idx != last:
        log.warning("%s: output redirect ignored before the last stage", cmd.output_path)

    opened = []
    try:
        if idx == 0 and cmd.input_path is not None:
            stdin = open_redirect(cmd.input_path, os.O_RDONLY)
            opened.append(stdin)
        if idx == last and cmd.output_path is not None:
            stdout = open_redirect(cmd.output_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC)
            opened.append(stdout)
        return run_external(cmd.args, stdin=stdin, stdout=stdout, pgid=pgid, tty_fd=tty_fd)
    finally:
        close_fds(opened)


def abort_launch(started, pgid):
    """Kill and reap whatever part of a pipeline was already started."""
    if not started:
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    for handle, _args in started:
        handle.wait()


def launch_pipeline(commands, tty_fd=None):
    """
    Create one process per command, chained by pipes, in one new process
    group whose id is the first process's pid. With tty_fd the group is
    made the terminal's foreground group from inside each child.
    Returns: unregistered Job, or None when no stage could be started
    Raises: LaunchError (nothing is left running)
    """
    # Child output goes straight to fd 1; flush ours first
    sys.stdout.flush()
    pipes = create_pipes(len(commands) - 1)
    started = []
    pgid = 0

    try:
        for idx, cmd in enumerate(commands):
            if not cmd.args:
                # Keeps its slot; neighbours see EOF / a closed pipe
                log.debug("stage %d is empty, skipped", idx)
                continue
            try:
                handle = spawn_stage(cmd, idx, pipes, pgid, tty_fd)
            except ExecError as e:
                print(e, file=sys.stderr)
                log.debug("stage %d failed, exit status %d", idx, e.exit_code)
                continue
            if not pgid:
                pgid = handle.pid
            started.append((handle, cmd.args))
    except LaunchError:
        abort_launch(started, pgid)
        raise
    finally:
        close_fds(fd for pair in pipes for fd in pair)

    if not started:
        return None

    processes = [JobProcess(handle.pid, args, handle=handle) for handle, args in started]
    return Job(None, pgid, pipeline_text(commands), JobStatus.RUNNING, processes)


def execute_pipeline(commands, jobs, terminal):
    """
    Launch commands and either wait for them with the terminal or leave
    them running as a background job.
    Returns: the Job, or None if nothing was started
    """
    if not commands:
        return None

    background = commands[-1].background
    tty_fd = None if background else terminal.tty_fd
    with sigchld_blocked():
        try:
            job = launch_pipeline(commands, tty_fd)
        except LaunchError:
            # Children may have taken the terminal before the abort
            terminal.take_terminal()
            raise
        if job is None:
            # So may children whose exec failed
            terminal.take_terminal()
            return None
        if background:
            terminal.launch_background(job, jobs)
        else:
            terminal.run_foreground(job, jobs)
    return job
