import os
import signal

SHELL_NAME = "jobshell"
PROMPT = os.getenv("JOBSHELL_PROMPT", f"{SHELL_NAME}> ")

# Log level for diagnostics (environment / terminal problems)
LOG_LEVEL = os.getenv("JOBSHELL_LOG_LEVEL", "WARNING").upper()

# Permission bits for files created by > redirection
REDIRECT_MODE = 0o644

# Signals every child restores to default; the interactive shell ignores
# all of them except SIGINT, which abandons the line being typed
JOB_CONTROL_SIGNALS = (
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGTSTP,
    signal.SIGTTIN,
    signal.SIGTTOU,
)

# Exit status of a stage whose program could not be executed
EXIT_NOT_FOUND = 127
EXIT_CANNOT_EXEC = 126
