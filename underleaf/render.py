"""Rich terminal renderer for streamed assistant turns.

AssistantBridge yields plain text with tool calls embedded as
__TOOL_CALL_START__{json}__TOOL_CALL_END__ markers. Chunks are arbitrary
slices of that text, so a marker may arrive split across several of them.
"""

import json

from underleaf import cloudwatch
from underleaf.assistant.events import TOOL_CALL_END, TOOL_CALL_START


def _partial_suffix(text, marker):
    """Length of the longest tail of text that could start marker."""
    for k in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


class ChunkRenderer:
    """Prints assistant text as it streams and one status line per tool call.

        renderer = ChunkRenderer(console)
        for chunk in bridge.stream_turn(user, project, message):
            renderer.feed(chunk)
        renderer.finish()
    """

    def __init__(self, console, trace_id=None):
        self.console = console
        self._pending = ""
        self._trace_id = trace_id
        self.tool_calls = []

    def feed(self, chunk):
        self._pending += chunk
        while True:
            start = self._pending.find(TOOL_CALL_START)
            if start == -1:
                keep = _partial_suffix(self._pending, TOOL_CALL_START)
                cut = len(self._pending) - keep
                self._text(self._pending[:cut])
                self._pending = self._pending[cut:]
                return
            self._text(self._pending[:start])
            end = self._pending.find(TOOL_CALL_END, start)
            if end == -1:
                self._pending = self._pending[start:]
                return
            payload = self._pending[start + len(TOOL_CALL_START):end]
            self._pending = self._pending[end + len(TOOL_CALL_END):]
            self._tool(payload)

    def _text(self, text):
        if text:
            self.console.print(text, end="", highlight=False, markup=False)

    def _label(self, call):
        name = call.get("name") or "tool"
        args = call.get("arguments") or {}
        detail = next(
            (str(args[k]) for k in ("file_path", "path", "command", "query", "pattern", "url") if args.get(k)),
            "",
        )
        if len(detail) > 60:
            detail = "…" + detail[-59:]
        return f"{name}: {detail}" if detail else name

    def _tool(self, payload):
        try:
            call = json.loads(payload)
        except json.JSONDecodeError:
            self._text(payload)
            return
        self.tool_calls.append(call)
        label = self._label(call)
        self.console.print(f"  [dim]◆ {label}[/dim]", highlight=False)
        if self._trace_id:
            cloudwatch.emit(self._trace_id, "assistant", call.get("name") or "tool",
                            tool_id=call.get("id"))

    def finish(self):
        """Flush anything held back waiting for a marker to complete."""
        self._text(self._pending)
        self._pending = ""
        self.console.print()
