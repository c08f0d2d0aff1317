"""Docker's multiplexed exec stream.

A non-TTY exec interleaves stdout and stderr on one socket. Every frame is an
8-byte header followed by the payload:

    byte 0      channel (0 = stdin, 1 = stdout, 2 = stderr)
    bytes 1-3   zero padding
    bytes 4-7   payload length, big-endian uint32

Reads from the socket do not respect frame (or line) boundaries, so both the
decoder and the line accumulator keep whatever is incomplete until the next
feed.
"""

import struct

from underleaf.errors import ProtocolDesync

STDIN = 0
STDOUT = 1
STDERR = 2

_HEADER = struct.Struct(">B3sL")
_PADDING = b"\x00\x00\x00"
MAX_FRAME = 64 * 1024 * 1024


def encode_frame(channel, payload):
    """Build one frame. Used by test runtimes to fake exec output."""
    if isinstance(payload, str):
        payload = payload.encode()
    return _HEADER.pack(channel, _PADDING, len(payload)) + payload


class FrameDecoder:
    """Incremental frame decoder.

    feed() returns the (channel, payload) frames completed by the new bytes.
    """

    def __init__(self):
        self._pending = bytearray()

    def feed(self, data):
        self._pending.extend(data)
        frames = []
        while len(self._pending) >= _HEADER.size:
            channel, padding, size = _HEADER.unpack_from(self._pending)
            if channel not in (STDIN, STDOUT, STDERR) or padding != _PADDING:
                raise ProtocolDesync(
                    f"bad frame header {bytes(self._pending[:_HEADER.size]).hex()}"
                )
            if size > MAX_FRAME:
                raise ProtocolDesync(f"frame of {size} bytes exceeds limit")
            end = _HEADER.size + size
            if len(self._pending) < end:
                break
            frames.append((channel, bytes(self._pending[_HEADER.size:end])))
            del self._pending[:end]
        return frames

    def finish(self):
        """Call at end of stream; a leftover partial frame is a desync."""
        if self._pending:
            raise ProtocolDesync(
                f"stream ended inside a frame ({len(self._pending)} bytes pending)"
            )


class LineBuffer:
    """Accumulates bytes and hands back complete, decoded lines.

    Splitting happens on raw bytes so a multi-byte UTF-8 character cut across
    two frames is decoded only once the whole line is in.
    """

    def __init__(self):
        self._pending = bytearray()

    def feed(self, data):
        self._pending.extend(data)
        if b"\n" not in data:
            return []
        *complete, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        return [line.decode("utf-8", errors="replace") for line in complete]

    def flush(self):
        rest = bytes(self._pending).decode("utf-8", errors="replace")
        self._pending.clear()
        return rest


def demultiplex(chunks):
    """Decode a whole stream into (stdout_bytes, stderr_bytes)."""
    decoder = FrameDecoder()
    buffers = {STDOUT: bytearray(), STDERR: bytearray()}
    for chunk in chunks:
        for channel, payload in decoder.feed(chunk):
            if channel in buffers:
                buffers[channel].extend(payload)
    decoder.finish()
    return bytes(buffers[STDOUT]), bytes(buffers[STDERR])
