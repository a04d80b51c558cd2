import sys

from jobshell.builtin import execute_builtin
from jobshell.config import PROMPT, SHELL_NAME
from jobshell.errors import ShellError
from jobshell.executor import execute_pipeline
from jobshell.job_control import JobTable, SignalReaper, cleanup_jobs, sigchld_blocked
from jobshell.logger import setup_logging
from jobshell.parser import parse_command
from jobshell.terminal import TerminalController, stdin_fd


def run_line(line, jobs, terminal):
    """
    Parse and run one input line.
    Returns: False when the shell should exit
    """
    commands = parse_command(line)
    if not commands:
        return True

    # Builtins only run as a lone command
    if len(commands) == 1:
        if commands[0].args[0] == "exit":
            return False
        executed, _ = execute_builtin(commands[0], jobs, terminal)
        if executed:
            return True

    try:
        execute_pipeline(commands, jobs, terminal)
    except ShellError as e:
        print(f"{SHELL_NAME}: {e}", file=sys.stderr)
    return True


def main_loop(prompt=PROMPT):
    """Main shell loop"""
    setup_logging()
    jobs = JobTable()
    reaper = SignalReaper(jobs)
    reaper.install()

    fd = stdin_fd()
    terminal = TerminalController.init_shell(fd) if fd is not None else TerminalController()

    try:
        while True:
            # Finished jobs leave the table only between commands
            with sigchld_blocked():
                jobs.prune_done()

            try:
                line = input(prompt)
            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                print()
                continue

            if not line.strip():
                continue

            try:
                if not run_line(line, jobs, terminal):
                    break
            except KeyboardInterrupt:
                print()
    finally:
        cleanup_jobs(jobs)
        reaper.uninstall()
    return 0


def main():
    # Child failures are reported per command, never as the shell's status
    main_loop()
    return 0
