"""In-memory runtime and shared fixtures.

FakeRuntime implements the Runtime ABC without a Docker daemon. Exec output is
produced in the real multiplexed wire format, and a small interpreter covers
the fixed shell snippets the signal channel uses, backed by a per-container
dict "filesystem".
"""

import fnmatch
import io
import itertools
import posixpath
import queue
import tarfile
import threading
import time

import pytest

from underleaf import log, signals
from underleaf.assistant.auth import ENSURE_EXPECT, INSTALL_SCRIPT
from underleaf.config import DEFAULT_CONFIG
from underleaf.executor import CommandExecutor
from underleaf.runtime.base import ExecStream, Runtime
from underleaf.sandboxes import SandboxRegistry
from underleaf.signals import SignalFileChannel
from underleaf.stream import STDERR, STDOUT, encode_frame
from underleaf.volumes import VolumeRegistry

IMAGE = DEFAULT_CONFIG["image"]
WORKDIR = DEFAULT_CONFIG["workdir"]


def frames(stdout=b"", stderr=b""):
    if isinstance(stdout, str):
        stdout = stdout.encode()
    if isinstance(stderr, str):
        stderr = stderr.encode()
    data = b""
    if stdout:
        data += encode_frame(STDOUT, stdout)
    if stderr:
        data += encode_frame(STDERR, stderr)
    return data


def split_bytes(data, size):
    if not size:
        return [data] if data else []
    return [data[i:i + size] for i in range(0, len(data), size)]


class FakeExecStream(ExecStream):
    """Non-TTY exec. Output is produced once stdin is complete (first read)."""

    def __init__(self, producer, chunk_size=None):
        self._producer = producer
        self._chunks = None
        self.chunk_size = chunk_size
        self.written = bytearray()
        self.write_closed = False
        self.closed = False

    def read(self, size=65536):
        if self.closed:
            return b""
        if self._chunks is None:
            self._chunks = split_bytes(self._producer(bytes(self.written)), self.chunk_size)
        if not self._chunks:
            return b""
        return self._chunks.pop(0)

    def write(self, data):
        self.written.extend(data)

    def close_write(self):
        self.write_closed = True

    def close(self):
        self.closed = True


class QueueExecStream(ExecStream):
    """Stream fed by the test (or a scripted driver thread) through push()."""

    def __init__(self):
        self._queue = queue.Queue()
        self.written = bytearray()
        self.closed = False

    def push(self, data):
        self._queue.put(data.encode() if isinstance(data, str) else data)

    def end(self):
        self._queue.put(b"")

    def read(self, size=65536):
        if self.closed:
            return b""
        return self._queue.get()

    def write(self, data):
        self.written.extend(data)

    def close_write(self):
        pass

    def close(self):
        self.closed = True
        self._queue.put(b"")


class FakeExec:
    def __init__(self, exec_id, container, argv, env, workdir, stdin, tty):
        self.id = exec_id
        self.container = container
        self.argv = list(argv)
        self.env = list(env or [])
        self.workdir = workdir
        self.stdin = stdin
        self.tty = tty
        self.stdin_data = b""
        self.exit_code = None
        self.stream = None


class FakeRuntime(Runtime):
    def __init__(self):
        self.images = {IMAGE}
        self.volumes = {}
        self.containers = {}
        self.execs = {}
        self.fs = {}
        self.handlers = []
        self.created = []
        self.create_delay = 0
        self.chunk_size = None
        self.fail_start = False
        self.report_exit_code = True
        self.on_write = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # Scripting

    def on(self, match, result):
        """Register a response for execs whose argv matches.

        match: argv prefix (list) or predicate(argv). result: (stdout, stderr,
        exit_code) or callable(exec) returning that tuple once stdin is in.
        """
        self.handlers.append((self._matcher(match), result, "result"))

    def on_stream(self, match, factory):
        """Hand execs whose argv matches the ExecStream built by factory(exec)."""
        self.handlers.append((self._matcher(match), factory, "stream"))

    @staticmethod
    def _matcher(match):
        if isinstance(match, (list, tuple)):
            prefix = list(match)
            return lambda argv: argv[:len(prefix)] == prefix
        return match

    def files(self, container):
        return self.fs.setdefault(self._find(container)["id"], {})

    def exec_argvs(self):
        return [e.argv for e in self.execs.values()]

    # Images / volumes

    def image_exists(self, image):
        return image in self.images

    def volume_exists(self, name):
        return name in self.volumes

    def create_volume(self, name, labels):
        with self._lock:
            self.volumes.setdefault(name, {"labels": dict(labels), "created": time.time()})

    def remove_volume(self, name):
        del self.volumes[name]

    def list_volumes(self, labels):
        return [
            {"name": name, "labels": v["labels"], "created": v["created"]}
            for name, v in self.volumes.items()
            if all(v["labels"].get(k) == val for k, val in labels.items())
        ]

    # Containers

    def _find(self, container):
        found = self.containers.get(container)
        if found:
            return found
        for c in self.containers.values():
            if c["name"] == container:
                return c
        raise KeyError(container)

    def create_container(self, name, image, volume, mount_path, labels, network=None):
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._lock:
            if any(c["name"] == name for c in self.containers.values()):
                raise RuntimeError(f"Conflict. The container name {name} is already in use")
            container_id = f"c{next(self._ids)}"
            self.containers[container_id] = {
                "id": container_id,
                "name": name,
                "image": image,
                "volume": volume,
                "mount_path": mount_path,
                "labels": dict(labels),
                "network": network,
                "running": False,
                "created": time.time(),
            }
            self.created.append(container_id)
            return container_id

    def start_container(self, container):
        if self.fail_start:
            raise RuntimeError("cannot start container")
        self._find(container)["running"] = True

    def stop_container(self, container, timeout=10):
        self._find(container)["running"] = False

    def remove_container(self, container):
        c = self._find(container)
        del self.containers[c["id"]]
        self.fs.pop(c["id"], None)

    def container_state(self, container):
        try:
            c = self._find(container)
        except KeyError:
            return None
        return "running" if c["running"] else "stopped"

    def list_containers(self, labels):
        return [
            {
                "id": c["id"],
                "name": c["name"],
                "running": c["running"],
                "labels": c["labels"],
                "created": c["created"],
            }
            for c in self.containers.values()
            if all(c["labels"].get(k) == val for k, val in labels.items())
        ]

    # Exec

    def exec_create(self, container, argv, env=None, workdir=None, stdin=False, tty=False):
        c = self._find(container)
        if not c["running"]:
            raise RuntimeError(f"container {c['name']} is not running")
        exec_id = f"e{next(self._ids)}"
        self.execs[exec_id] = FakeExec(exec_id, c["id"], argv, env, workdir, stdin, tty)
        return exec_id

    def exec_attach(self, exec_id, tty=False):
        ex = self.execs[exec_id]
        for match, result, kind in self.handlers:
            if not match(ex.argv):
                continue
            if kind == "stream":
                ex.stream = result(ex)
                return ex.stream
            if callable(result):
                return self._stream(ex, lambda: result(ex))
            return self._stream(ex, lambda: result)
        return self._stream(ex, lambda: self._builtin(ex, ex.stdin_data))

    def _stream(self, ex, respond):
        def producer(stdin):
            ex.stdin_data = stdin
            stdout, stderr, code = respond()
            ex.exit_code = code
            return frames(stdout, stderr)

        ex.stream = FakeExecStream(producer, self.chunk_size)
        return ex.stream

    def exec_exit_code(self, exec_id):
        if not self.report_exit_code:
            return None
        return self.execs[exec_id].exit_code

    def _path(self, ex, path):
        return posixpath.normpath(posixpath.join(ex.workdir or WORKDIR, path))

    def _builtin(self, ex, stdin):
        files = self.fs.setdefault(ex.container, {})
        argv = ex.argv
        text = stdin.decode()

        if argv[:2] == ["sh", "-c"]:
            script, args = argv[2], argv[4:]
            if script == signals.WRITE_SCRIPT:
                path = self._path(ex, args[1])
                files[path] = text
                if self.on_write:
                    self.on_write(self, ex.container, path)
                return "", "", 0
            if script in (signals.READ_SCRIPT, signals.TAKE_SCRIPT):
                path = self._path(ex, args[0])
                if path not in files:
                    return "", "", 1
                content = files[path]
                if script == signals.TAKE_SCRIPT:
                    del files[path]
                return content, "", 0
            if script == signals.DISCARD_SCRIPT:
                files.pop(self._path(ex, args[0]), None)
                return "", "", 0
            if script == signals.LIST_SCRIPT:
                directory, pattern = self._path(ex, args[0]), args[1]
                names = [
                    posixpath.basename(p) for p in files
                    if posixpath.dirname(p) == directory
                    and fnmatch.fnmatch(posixpath.basename(p), pattern)
                ]
                return "".join(n + "\n" for n in sorted(names)), "", 0
            if script in ('cat > "$1"', INSTALL_SCRIPT):
                files[self._path(ex, args[0])] = text
                return "", "", 0
            if script in (signals.PREPARE_SCRIPT, ENSURE_EXPECT):
                return "", "", 0

        if argv[:2] == ["test", "-f"]:
            return "", "", 0 if self._path(ex, argv[2]) in files else 1

        return "", "", 0

    def get_archive(self, container, path):
        files = self.fs.get(self._find(container)["id"], {})
        if path not in files:
            raise FileNotFoundError(path)
        content = files[path]
        data = content.encode() if isinstance(content, str) else content
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo(posixpath.basename(path))
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        return buf.getvalue()


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    path = tmp_path / "logs.jsonl"
    monkeypatch.setattr(log, "LOGS_FILE", path)
    return path


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def volumes(runtime, clock):
    return VolumeRegistry(runtime, clock=clock)


@pytest.fixture
def registry(runtime, volumes, clock):
    return SandboxRegistry(runtime, volumes, {}, clock=clock)


@pytest.fixture
def executor(registry):
    return CommandExecutor(registry)


@pytest.fixture
def channel(executor):
    return SignalFileChannel(executor, poll_interval=0.01)
