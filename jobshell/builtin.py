import os
import sys

from jobshell.config import SHELL_NAME
from jobshell.errors import JobControlError
from jobshell.job_control import show_jobs


def builtin_help():
    """Print help message"""
    print(f"""{SHELL_NAME} help:
 Built-in commands:
  cd <dir>      : change directory
  exit          : exit shell
  help          : print this help
  jobs [-l]     : list jobs (-l adds member processes)
  fg [%]<id>    : resume a job in the foreground
  bg [%]<id>    : resume a stopped job in the background

Features:
  Pipes using |
  Redirection using > <
  Background with & (run pipeline in background)
""")
    return 0


def builtin_cd(args):
    """Change directory"""
    if not args:
        print(f'{SHELL_NAME}: expected argument to "cd"', file=sys.stderr)
        return 1
    try:
        os.chdir(os.path.expanduser(args[0]))
        return 0
    except OSError as e:
        print(f"cd: {args[0]}: {e.strerror}", file=sys.stderr)
        return 1


def builtin_jobs(args, jobs):
    """List jobs"""
    show_jobs(jobs, long="-l" in args)
    return 0


def parse_job_id(name, args):
    """
    Accept %N or N.
    Returns: job id, or None after printing a usage / lookup error
    """
    if not args:
        print(f"{SHELL_NAME}: {name}: usage: {name} %jobid", file=sys.stderr)
        return None
    digits = args[0][1:] if args[0].startswith("%") else args[0]
    try:
        return int(digits)
    except ValueError:
        print(f"{SHELL_NAME}: {name}: {args[0]}: no such job", file=sys.stderr)
        return None


def builtin_fg(args, jobs, terminal):
    """Bring a job to the foreground"""
    job_id = parse_job_id("fg", args)
    if job_id is None:
        return 1
    try:
        terminal.foreground_job(jobs, job_id)
        return 0
    except JobControlError as e:
        print(f"{SHELL_NAME}: {e}", file=sys.stderr)
        return 1


def builtin_bg(args, jobs, terminal):
    """Continue a job in the background"""
    job_id = parse_job_id("bg", args)
    if job_id is None:
        return 1
    try:
        terminal.background_job(jobs, job_id)
        return 0
    except JobControlError as e:
        print(f"{SHELL_NAME}: {e}", file=sys.stderr)
        return 1


def execute_builtin(command, jobs, terminal):
    """
    Execute built-in command if it matches.
    Returns (executed: bool, exit_code: int)
    """
    if not command.args:
        return False, 0

    cmd = command.args[0]
    args = command.args[1:]

    builtins = {
        'help': lambda: builtin_help(),
        'cd': lambda: builtin_cd(args),
        'jobs': lambda: builtin_jobs(args, jobs),
        'fg': lambda: builtin_fg(args, jobs, terminal),
        'bg': lambda: builtin_bg(args, jobs, terminal),
        'exit': lambda: 0,  # Handled in main loop
    }

    if cmd in builtins:
        return True, builtins[cmd]()
    return False, 0
