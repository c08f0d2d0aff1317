"""Interactive sign-in for the assistant CLI inside a sandbox.

The CLI's first-run login is a TTY dialogue, so it is driven by an expect
script running on a TTY exec. The script prints milestone markers, and the
host watches the raw terminal output for them:

    AUTH_URL_FOUND: <url>            sign-in URL for the user to open
    ALREADY_AUTHENTICATED            nothing to do
    AUTHENTICATION_SUCCESS           code accepted, CLI configured
    CODE_ERROR, SETUP_ERROR,
    TIMEOUT_WAITING_FOR_CODE_FILE    failure

The verification code travels back through the signal directory
(verification_code.txt). The script also mirrors its final marker into
auth_result.txt so a host that lost the live stream can still learn the
outcome by polling.
"""

import codecs
import re
import threading
import time
from dataclasses import dataclass

from underleaf import cloudwatch
from underleaf.config import DEFAULT_CONFIG
from underleaf.errors import AuthError, AuthTimeout
from underleaf.log import write_log

SCRIPT_PATH = "/tmp/underleaf_auth.exp"
CODE_FILE = "verification_code.txt"
RESULT_FILE = "auth_result.txt"

ALREADY_AUTHENTICATED = "ALREADY_AUTHENTICATED"
AUTHENTICATION_SUCCESS = "AUTHENTICATION_SUCCESS"
FAILURE_MARKERS = ("CODE_ERROR", "SETUP_ERROR", "TIMEOUT_WAITING_FOR_CODE_FILE")
SUCCESS_MARKERS = (ALREADY_AUTHENTICATED, AUTHENTICATION_SUCCESS)

WAITING_FOR_CODE = "waiting_for_code"
ALREADY_CONFIGURED = "already_configured"
COMPLETED = "completed"

ENSURE_EXPECT = "command -v expect >/dev/null || (apt-get update -qq && apt-get install -y -qq expect)"
INSTALL_SCRIPT = 'cat > "$1" && chmod +x "$1"'

DRIVER_SCRIPT = r'''#!/usr/bin/expect -f
# Drives the claude first-run sign-in. Usage: expect -f <script> <signal dir>

set comm [lindex $argv 0]
set code_file "$comm/verification_code.txt"
set result_file "$comm/auth_result.txt"

proc finish {marker status} {
    global result_file
    puts $marker
    catch {
        set fh [open $result_file w]
        puts $fh $marker
        close $fh
        file attributes $result_file -permissions 0666
    }
    exit $status
}

set timeout 60
spawn claude

expect {
    -re {text style.*:} { send "\r" }
    -re {already.*authenticated} { finish ALREADY_AUTHENTICATED 0 }
    timeout { finish SETUP_ERROR 1 }
    eof { finish SETUP_ERROR 1 }
}

expect {
    -re {login method.*:|authentication.*:} { send "\r" }
    timeout { finish SETUP_ERROR 1 }
    eof { finish SETUP_ERROR 1 }
}

expect {
    -re {(https?://[^\s\x1b\x00-\x1f]+)} {
        puts "\nAUTH_URL_FOUND: $expect_out(1,string)"
        puts "WAITING_FOR_CODE"
    }
    -re {already.*authenticated} { finish ALREADY_AUTHENTICATED 0 }
    -re {error|failed|invalid} { finish SETUP_ERROR 1 }
    timeout { finish SETUP_ERROR 1 }
    eof { finish SETUP_ERROR 1 }
}

# Up to 5 minutes for the user to paste the code.
set code ""
for {set i 0} {$i < 1500} {incr i} {
    if {[file exists $code_file] && [file readable $code_file]} {
        set fh [open $code_file r]
        set code [string trim [read $fh]]
        close $fh
        file delete $code_file
        if {$code ne ""} {
            catch {close [open "$code_file.ack" w]}
            break
        }
    }
    after 200
}
if {$code eq ""} { finish TIMEOUT_WAITING_FOR_CODE_FILE 1 }

foreach ch [split $code ""] {
    send -- $ch
    after 50
}
send "\r"
puts "CODE_SUBMITTED"

expect {
    -re {successful} { send "\r" }
    -re {error|failed|invalid|incorrect} { finish CODE_ERROR 1 }
    timeout { finish CODE_ERROR 1 }
    eof { finish CODE_ERROR 1 }
}
expect {
    -re {Security notes} { send "\r" }
    timeout { finish SETUP_ERROR 1 }
    eof { finish SETUP_ERROR 1 }
}
expect {
    -re {trust.*files} { send "\r" }
    timeout { finish SETUP_ERROR 1 }
    eof { finish SETUP_ERROR 1 }
}

send "\003"
after 500
send "\003"
after 1000
finish AUTHENTICATION_SUCCESS 0
'''

_ANSI = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"   # OSC (titles, hyperlinks)
    r"|\x1b\[[0-?]*[ -/]*[@-~]"             # CSI
    r"|\x1b[@-Z\\-_]"                       # two-byte escapes
)
_URL_MARKER = re.compile(r"AUTH_URL_FOUND:\s*(https?://[^\s\x00-\x1f]+)\s")
_BARE_URL = re.compile(r"(https?://[^\s\x00-\x1f]+)\s")
_WAITING = re.compile(r"\bWAITING_FOR_CODE\b")
_MARKER = re.compile(r"\b(" + "|".join(SUCCESS_MARKERS + FAILURE_MARKERS) + r")\b")


def strip_ansi(text):
    return _ANSI.sub("", text)


@dataclass
class AuthStatus:
    step: str
    url: str = None
    output: str = ""


class AuthSession:
    """Watches one driver's TTY output on a background thread."""

    def __init__(self, user, project, exec_id, stream):
        self.user = user
        self.project = project
        self.exec_id = exec_id
        self.stream = stream
        self.url = None
        self.outcome = None
        self.exited = False
        self.created = time.time()
        self._raw = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._cond = threading.Condition()
        self._thread = None

    @property
    def output(self):
        with self._cond:
            return strip_ansi(self._raw)

    def start(self):
        self._thread = threading.Thread(target=self._read, name="underleaf-auth", daemon=True)
        self._thread.start()

    def _read(self):
        try:
            for chunk in self.stream:
                self.feed(chunk)
        except OSError:
            pass  # torn down from the other side; same as EOF
        finally:
            with self._cond:
                self.exited = True
                self._scan(strip_ansi(self._raw))
                self._cond.notify_all()

    def feed(self, data):
        text = self._decoder.decode(data)
        with self._cond:
            self._raw += text
            self._scan(strip_ansi(self._raw))
            self._cond.notify_all()

    def _scan(self, output):
        # The driver's marker always wins. Any other URL in the TUI output is
        # only a fallback once the driver waits for the code or has exited.
        marked = _URL_MARKER.search(output)
        if marked:
            self.url = marked.group(1)
        elif self.url is None and (self.exited or _WAITING.search(output)):
            found = _BARE_URL.search(output)
            if found:
                self.url = found.group(1)
        if self.outcome is None:
            found = _MARKER.search(output)
            if found:
                self.outcome = found.group(1)

    def wait(self, predicate, timeout):
        """Block until predicate(self) holds. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self), timeout=timeout)

    def close(self):
        self.stream.close()


class AuthWizard:
    def __init__(self, executor, channel, volumes,
                 setup_timeout=DEFAULT_CONFIG["setup_timeout"],
                 verify_timeout=DEFAULT_CONFIG["verify_timeout"]):
        self.executor = executor
        self.channel = channel
        self.volumes = volumes
        self.setup_timeout = setup_timeout
        self.verify_timeout = verify_timeout
        self._sessions = {}
        self._lock = threading.Lock()

    def _log(self, user, project, event, **extra):
        write_log({"event": event, "user": user, "project": project, **extra})
        cloudwatch.emit(f"{user}/{project}", "auth", event, **extra)

    def start(self, user, project):
        """Start the sign-in driver and return once it reaches a milestone."""
        self.cancel(user, project)

        self.executor.run(user, project, ["sh", "-c", ENSURE_EXPECT])
        self.channel.prepare(user, project)
        self.channel.discard(user, project, CODE_FILE)
        self.channel.discard(user, project, RESULT_FILE)
        self.executor.run(user, project, ["sh", "-c", INSTALL_SCRIPT, "sh", SCRIPT_PATH],
                          stdin=DRIVER_SCRIPT)

        exec_id, stream = self.executor.open(
            user, project, ["expect", "-f", SCRIPT_PATH, self.channel.directory],
            stdin=True, tty=True,
        )
        session = AuthSession(user, project, exec_id, stream)
        session.start()

        reached = session.wait(lambda s: s.url or s.outcome or s.exited, self.setup_timeout)
        if not reached:
            session.close()
            self._log(user, project, "auth_timeout", stage="setup")
            raise AuthTimeout(f"Sign-in did not start within {self.setup_timeout}s")

        if session.outcome in SUCCESS_MARKERS:
            session.close()
            step = ALREADY_CONFIGURED if session.outcome == ALREADY_AUTHENTICATED else COMPLETED
            self._log(user, project, "auth_" + step)
            return AuthStatus(step, output=session.output)

        if session.outcome or not session.url:
            session.close()
            reason = session.outcome or "driver exited"
            self._log(user, project, "auth_failed", stage="setup", reason=reason)
            raise AuthError(f"Sign-in setup failed: {reason}")

        with self._lock:
            self._sessions[(user, project)] = session
        self._log(user, project, "auth_url")
        return AuthStatus(WAITING_FOR_CODE, url=session.url, output=session.output)

    def verify(self, user, project, code):
        """Hand the verification code to the driver and report the outcome."""
        self.volumes.require(project)
        code = (code or "").strip()
        if not code:
            raise ValueError("Verification code is empty")

        self.channel.deliver(user, project, CODE_FILE, code)

        with self._lock:
            session = self._sessions.pop((user, project), None)
        if session is None:
            return self._verify_by_polling(user, project)

        try:
            done = session.wait(lambda s: s.outcome or s.exited, self.verify_timeout)
        finally:
            session.close()
        if not done:
            self._log(user, project, "auth_timeout", stage="verify")
            raise AuthTimeout(f"No sign-in result within {self.verify_timeout}s")
        return self._conclude(user, project, session.outcome or "driver exited")

    def _verify_by_polling(self, user, project):
        result = self.channel.wait(user, project, RESULT_FILE, self.verify_timeout)
        if result is None:
            self._log(user, project, "auth_timeout", stage="verify")
            raise AuthTimeout(f"No sign-in result within {self.verify_timeout}s")
        found = _MARKER.search(result)
        return self._conclude(user, project, found.group(1) if found else result.strip())

    def _conclude(self, user, project, outcome):
        if outcome in SUCCESS_MARKERS:
            self._log(user, project, "auth_completed")
            return AuthStatus(COMPLETED)
        self._log(user, project, "auth_failed", stage="verify", reason=outcome)
        raise AuthError(f"Sign-in failed: {outcome}")

    def pending(self, user, project):
        with self._lock:
            return (user, project) in self._sessions

    def cancel(self, user, project):
        with self._lock:
            session = self._sessions.pop((user, project), None)
        if session is None:
            return False
        session.close()
        self._log(user, project, "auth_cancelled")
        return True
