"""Console timing helpers for the CLI.

StageTimer reports how long each named stage of an operation took (sandbox
acquisition, each compile strategy) and mirrors the stages to CloudWatch when
a trace id is given. AgentHeartbeat keeps the terminal alive while an assistant
turn has not produced its first chunk yet.
"""

import threading
import time

from underleaf import cloudwatch


class StageTimer:
    """Prints the elapsed time of each stage as it is marked.

        t = StageTimer(console, trace_id="alice/thesis")
        registry.get_or_create(user, project)
        t.mark("sandbox")       # prints "  sandbox  0.8s"
        t.total()
    """

    def __init__(self, console, trace_id=None, clock=time.monotonic):
        self.console = console
        self.trace_id = trace_id
        self.stages = []
        self._clock = clock
        self._t0 = self._last = clock()

    def mark(self, label):
        now = self._clock()
        elapsed, self._last = now - self._last, now
        self.stages.append((label, elapsed))
        self.console.print(f"  [dim]{label}  {elapsed:.1f}s[/dim]")
        if self.trace_id:
            cloudwatch.emit(self.trace_id, "stage", label, elapsed_ms=elapsed * 1000)
        return elapsed

    def total(self):
        return self._clock() - self._t0


class AgentHeartbeat:
    def __init__(self, console, label="assistant", interval=5):
        self.console = console
        self.label = label
        self.interval = interval
        self.beats = 0
        self._stop = threading.Event()
        self._thread = None
        self._started = None

    def start(self):
        self._started = time.monotonic()
        self._stop.clear()
        self._thread = threading.Thread(target=self._beat, name="underleaf-heartbeat", daemon=True)
        self._thread.start()

    def stop(self):
        """Safe to call repeatedly; the first call after output is the one that matters."""
        self._stop.set()

    def _beat(self):
        while not self._stop.wait(timeout=self.interval):
            self.beats += 1
            waited = int(time.monotonic() - self._started)
            self.console.print(f"  [dim]waiting for {self.label}...  {waited}s[/dim]", highlight=False)
