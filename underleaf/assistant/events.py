"""Assistant stream-json events and the forwarding rules for one turn.

`claude --print --output-format stream-json` writes one JSON object per line.
parse_event() turns a line into a tagged event; TurnState decides what, if
anything, each event forwards to the caller as text.
"""

import json
from dataclasses import dataclass, field

TOOL_CALL_START = "__TOOL_CALL_START__"
TOOL_CALL_END = "__TOOL_CALL_END__"

NO_RESPONSE = "No response from Claude. Please check authentication and try again."

# Lines containing any of these are CLI diagnostics, not conversation.
NOISE_MARKERS = ("INFO", "DEBUG", "WARN", "session_id")
MAX_UNSTRUCTURED = 1000


@dataclass
class ToolCall:
    name: str
    id: str = None
    arguments: dict = field(default_factory=dict)
    session_id: str = None


@dataclass
class AssistantMessage:
    # str for text blocks, ToolCall for tool_use blocks, in message order
    items: list
    session_id: str = None


@dataclass
class Result:
    text: str
    session_id: str = None


@dataclass
class Delta:
    text: str
    session_id: str = None


@dataclass
class Stop:
    session_id: str = None


@dataclass
class Error:
    message: str
    session_id: str = None


@dataclass
class Unstructured:
    text: str
    session_id: str = None


@dataclass
class Ignored:
    type: str = None
    session_id: str = None


def _tool_call(block, session_id=None):
    arguments = block.get("input")
    return ToolCall(
        name=block.get("name"),
        id=block.get("id"),
        arguments=arguments if isinstance(arguments, dict) else {},
        session_id=session_id,
    )


def parse_event(line):
    """Parse one line of assistant output. Returns None for blank lines."""
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return Unstructured(line)
    if not isinstance(data, dict):
        return Ignored()

    kind = data.get("type")
    session_id = data.get("session_id") or None

    if kind == "assistant":
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, list):
            return Ignored(kind, session_id)
        items = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                items.append(block["text"])
            elif block.get("type") == "tool_use":
                items.append(_tool_call(block))
        return AssistantMessage(items, session_id)

    if kind == "tool_use" and data.get("name"):
        return _tool_call(data, session_id)

    if kind == "result" and data.get("result"):
        return Result(str(data["result"]), session_id)

    if kind == "content_block_delta":
        text = (data.get("delta") or {}).get("text")
        if text:
            return Delta(text, session_id)
        return Ignored(kind, session_id)

    if kind == "message_stop":
        return Stop(session_id)

    if kind == "error":
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message")
        else:
            message = error
        return Error(str(message or "Unknown error"), session_id)

    return Ignored(kind, session_id)


def tool_marker(call):
    payload = {
        "type": "tool_call",
        "name": call.name,
        "id": call.id,
        "arguments": call.arguments or {},
    }
    return f"\n{TOOL_CALL_START}{json.dumps(payload, separators=(',', ':'))}{TOOL_CALL_END}\n"


def is_noise(text):
    return len(text) >= MAX_UNSTRUCTURED or any(m in text for m in NOISE_MARKERS)


class TurnState:
    """Forwarding state for a single assistant turn.

        state = TurnState()
        for line in lines:
            for chunk in state.handle(parse_event(line)):
                send(chunk)
            if state.done:
                break
    """

    def __init__(self):
        self.forwarded = False
        self.done = False
        self.session_id = None

    def _emit(self, chunks):
        if chunks:
            self.forwarded = True
        return chunks

    def handle(self, event):
        if event is None or self.done:
            return []
        if self.session_id is None and event.session_id:
            self.session_id = event.session_id

        if isinstance(event, AssistantMessage):
            chunks = []
            text_sent = False
            for item in event.items:
                if isinstance(item, ToolCall):
                    chunks.append(tool_marker(item))
                elif not text_sent:
                    chunks.append(item + "\n\n")
                    text_sent = True
            return self._emit(chunks)

        if isinstance(event, ToolCall):
            return self._emit([tool_marker(event)])

        if isinstance(event, Result):
            if self.forwarded:
                return []
            return self._emit([event.text + "\n\n"])

        if isinstance(event, Delta):
            return self._emit([event.text])

        if isinstance(event, Stop):
            self.done = True
            return []

        if isinstance(event, Error):
            self.done = True
            if self.forwarded:
                return []
            return self._emit([f"Error: {event.message}"])

        if isinstance(event, Unstructured):
            if is_noise(event.text):
                return []
            return self._emit([event.text + "\n"])

        return []

    def handle_trailing(self, text):
        """Handle an unterminated final line left at end of stream."""
        text = text.strip()
        if not text or self.done:
            return []
        event = parse_event(text)
        if isinstance(event, Delta):
            if self.session_id is None and event.session_id:
                self.session_id = event.session_id
            return self._emit([event.text])
        if isinstance(event, Unstructured) and "{" not in text and not is_noise(text):
            return self._emit([text])
        if event is not None and self.session_id is None and event.session_id:
            self.session_id = event.session_id
        return []

    def error(self, message):
        """A stream-level failure ended the turn."""
        self.done = True
        if self.forwarded:
            return []
        return self._emit([f"Stream error: {message}"])

    def closing(self):
        if self.forwarded:
            return []
        return [NO_RESPONSE]
