"""File-drop channel between the host and processes inside a sandbox.

Producers write small files into a fixed directory in the sandbox; consumers
poll for them, read them and delete them. Both sides race by nature, so a file
that is gone by the time the producer reads it back is an expected outcome
(the consumer was fast), not an error. Consumers may also leave `<name>.ack`
behind once they have taken a file.

Every shell snippet is fixed text with paths passed as positional arguments;
payloads travel over stdin. Nothing user-supplied is ever spliced into a shell
string.
"""

import re
import time
from dataclasses import dataclass

from underleaf.config import DEFAULT_CONFIG
from underleaf.errors import CommandFailed
from underleaf.log import write_log

PREPARE_SCRIPT = 'mkdir -p "$1" && chmod 777 "$1"'
WRITE_SCRIPT = 'mkdir -p "$1" && cat > "$2" && chmod 666 "$2"'
READ_SCRIPT = 'test -f "$1" && cat "$1"'
TAKE_SCRIPT = 'test -f "$1" && cat "$1" && rm -f "$1"'
DISCARD_SCRIPT = 'rm -f "$1"'
LIST_SCRIPT = 'cd "$1" 2>/dev/null || exit 0; for f in $2; do [ -f "$f" ] && echo "$f"; done; exit 0'

ACK_SUFFIX = ".ack"

_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_PATTERN = re.compile(r"^[A-Za-z0-9_.*?-]+$")

CONFIRMED = "confirmed"
CONSUMED = "consumed"


def validate_name(name):
    if not _NAME.match(name or "") or name in (".", ".."):
        raise ValueError(f"Invalid signal file name: {name!r}")
    return name


@dataclass
class Delivery:
    name: str
    state: str

    @property
    def confirmed(self):
        return self.state == CONFIRMED

    @property
    def consumed(self):
        return self.state == CONSUMED


class SignalFileChannel:
    def __init__(self, executor, directory=DEFAULT_CONFIG["signal_dir"],
                 poll_interval=DEFAULT_CONFIG["signal_poll_interval"],
                 clock=time.monotonic, sleep=time.sleep):
        self.executor = executor
        self.directory = directory.rstrip("/") or "/"
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def path(self, name):
        return f"{self.directory}/{validate_name(name)}"

    def _sh(self, user, project, script, *args, stdin=None):
        return self.executor.run(user, project, ["sh", "-c", script, "sh", *args], stdin=stdin)

    def prepare(self, user, project):
        """Create the signal directory, writable by every user in the sandbox."""
        self._sh(user, project, PREPARE_SCRIPT, self.directory)

    def deliver(self, user, project, name, payload):
        """Write a signal file. Never fails on the consumer race.

        Returns a Delivery: confirmed when the payload (or the consumer's ack)
        is seen afterwards, consumed when the file is already gone or changed.
        """
        path = self.path(name)
        self._sh(user, project, WRITE_SCRIPT, self.directory, path, stdin=payload)

        seen = self.read(user, project, name)
        if seen is not None and seen == payload.strip():
            return Delivery(name, CONFIRMED)
        if self.take(user, project, name + ACK_SUFFIX) is not None:
            return Delivery(name, CONFIRMED)

        write_log({
            "event": "signal_consumed",
            "level": "warning",
            "user": user,
            "project": project,
            "file": name,
            "detail": "vanished before read-back" if seen is None else "content changed before read-back",
        })
        return Delivery(name, CONSUMED)

    def read(self, user, project, name):
        """Contents of a signal file without removing it, or None if absent."""
        try:
            return self._sh(user, project, READ_SCRIPT, self.path(name)).stdout
        except CommandFailed:
            return None

    def take(self, user, project, name):
        """Read and delete a signal file. None if it does not exist."""
        try:
            return self._sh(user, project, TAKE_SCRIPT, self.path(name)).stdout
        except CommandFailed:
            return None

    def wait(self, user, project, name, timeout):
        """Poll for a signal file until it appears or timeout seconds pass.

        The file is consumed (deleted) when found.
        """
        deadline = self._clock() + timeout
        while True:
            content = self.take(user, project, name)
            if content is not None:
                return content
            if self._clock() >= deadline:
                return None
            self._sleep(self.poll_interval)

    def discard(self, user, project, name):
        self._sh(user, project, DISCARD_SCRIPT, self.path(name))

    def list(self, user, project, pattern="*"):
        if not _PATTERN.match(pattern):
            raise ValueError(f"Invalid signal file pattern: {pattern!r}")
        out = self._sh(user, project, LIST_SCRIPT, self.directory, pattern).stdout
        return sorted(line for line in out.splitlines() if line)
