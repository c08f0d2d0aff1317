import threading
import time

from underleaf import cloudwatch
from underleaf.assistant.claude import build_turn_argv, has_settings, whoami
from underleaf.assistant.events import TurnState, parse_event
from underleaf.errors import ProtocolDesync
from underleaf.log import write_log
from underleaf.stream import STDERR, STDOUT, FrameDecoder, LineBuffer


class ConversationStore:
    """(user, project) -> assistant session id. Process memory only."""

    def __init__(self):
        self._tokens = {}
        self._lock = threading.Lock()

    def get(self, user, project):
        with self._lock:
            return self._tokens.get((user, project))

    def set(self, user, project, token):
        with self._lock:
            self._tokens[(user, project)] = token

    def clear(self, user, project):
        with self._lock:
            return self._tokens.pop((user, project), None) is not None


def _lines(stream):
    """Yield (line, complete) from a multiplexed exec stream.

    stdout and stderr are buffered separately so their partial lines never
    mix. Whatever is left unterminated at the end comes out with complete=False.
    """
    decoder = FrameDecoder()
    buffers = {STDOUT: LineBuffer(), STDERR: LineBuffer()}
    for chunk in stream:
        for channel, payload in decoder.feed(chunk):
            if channel in buffers:
                for line in buffers[channel].feed(payload):
                    yield line, True
    decoder.finish()
    for buffer in buffers.values():
        rest = buffer.flush()
        if rest.strip():
            yield rest, False


class AssistantBridge:
    """Streams assistant turns out of a user's sandbox.

        bridge = AssistantBridge(executor, env=assistant_env)
        for chunk in bridge.stream_turn("alice", "thesis", "fix the build"):
            send(chunk)

    Closing the generator early closes the exec stream.
    """

    def __init__(self, executor, store=None, env=None):
        self.executor = executor
        self.sessions = store or ConversationStore()
        self._env = env

    def _extra_env(self):
        return self._env() if self._env else None

    def stream_turn(self, user, project, message):
        resume = self.sessions.get(user, project)
        argv = build_turn_argv(
            message,
            resume=resume,
            use_settings=has_settings(self.executor, user, project),
        )
        _, stream = self.executor.open(user, project, argv, extra_env=self._extra_env())

        state = TurnState()
        t0 = time.time()
        try:
            try:
                for line, complete in _lines(stream):
                    if complete:
                        chunks = state.handle(parse_event(line))
                    else:
                        chunks = state.handle_trailing(line)
                    yield from chunks
                    if state.done:
                        break
            except (ProtocolDesync, OSError) as e:
                yield from state.error(str(e))
            yield from state.closing()
        finally:
            stream.close()
            if state.session_id:
                self.sessions.set(user, project, state.session_id)
            write_log({
                "event": "assistant_turn",
                "user": user,
                "project": project,
                "resumed": bool(resume),
                "session_id": state.session_id,
                "forwarded": state.forwarded,
            })
            cloudwatch.emit(f"{user}/{project}", "assistant", "turn",
                            elapsed_ms=(time.time() - t0) * 1000, resumed=bool(resume))

    def clear_session(self, user, project):
        return self.sessions.clear(user, project)

    def is_authenticated(self, user, project):
        return whoami(self.executor, user, project, extra_env=self._extra_env())
