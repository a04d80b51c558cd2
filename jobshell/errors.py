"""
Shell exception hierarchy.

    ShellError
    ├── ParseError        malformed redirect / quote syntax, line discarded
    ├── LaunchError       pipe or process creation failed, launch abandoned
    ├── ExecError         one stage's program missing or not executable
    └── JobControlError   fg / bg problems
        └── JobNotFoundError
"""


class ShellError(Exception):
    """Base class for every error the shell reports and survives."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ParseError(ShellError):
    pass


class LaunchError(ShellError):
    pass


class ExecError(ShellError):
    """A single pipeline stage failed to start; siblings are unaffected."""

    def __init__(self, program, message, exit_code):
        super().__init__(f"{program}: {message}")
        self.program = program
        self.exit_code = exit_code


class JobControlError(ShellError):
    pass


class JobNotFoundError(JobControlError):

    def __init__(self, builtin, job_id):
        super().__init__(f"{builtin}: %{job_id}: no such job")
        self.builtin = builtin
        self.job_id = job_id
