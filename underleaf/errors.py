"""Error taxonomy for sandbox, command and interactive-session failures.

NotFound, VolumeInUse and ConfirmationRequired are client errors: they are
raised before any side effect. CommandFailed keeps the command's real output so
callers can tell "nothing to commit" from a genuine git failure themselves.
"""


class UnderleafError(Exception):
    pass


class NotFound(UnderleafError):
    """No tracked volume (or sandbox) for the requested project."""


class SandboxUnavailable(UnderleafError):
    """The runtime could not create, start or reach a sandbox."""


class VolumeInUse(UnderleafError):
    pass


class ConfirmationRequired(UnderleafError):
    pass


class CommandFailed(UnderleafError):
    """A command exited non-zero inside a sandbox.

    str(err) carries the exit code and the first non-empty of stderr/stdout,
    unmodified.
    """

    def __init__(self, exit_code, stdout="", stderr="", argv=None):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.argv = list(argv or [])
        detail = stderr or stdout or "Unknown error"
        super().__init__(f"Command failed with exit code {exit_code}: {detail}")


class ProtocolDesync(CommandFailed):
    """The exec byte stream could not be split into valid frames."""

    def __init__(self, message, argv=None):
        self.exit_code = None
        self.stdout = ""
        self.stderr = message
        self.argv = list(argv or [])
        UnderleafError.__init__(self, f"Stream desync: {message}")


class AuthTimeout(UnderleafError):
    pass


class AuthError(UnderleafError):
    pass


class CompileFailed(UnderleafError):
    """No compilation strategy produced a valid PDF."""

    def __init__(self, message, stdout="", stderr=""):
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)
