import socket

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.types import Mount

from underleaf.errors import SandboxUnavailable
from underleaf.runtime.base import ExecStream, Runtime

KEEPALIVE_CMD = ["sleep", "infinity"]


def _label_filters(labels):
    return {"label": [f"{key}={value}" for key, value in labels.items()]}


class DockerExecStream(ExecStream):
    """Hijacked exec socket from the Docker API.

    exec_start(socket=True) hands back a SocketIO wrapper; reads and the
    half-close go to the underlying socket so partial frames arrive as sent.
    """

    def __init__(self, sock):
        self._sock = sock
        self._raw = getattr(sock, "_sock", sock)

    def read(self, size=65536):
        return self._raw.recv(size)

    def write(self, data):
        if isinstance(data, str):
            data = data.encode()
        self._raw.sendall(data)

    def close_write(self):
        try:
            self._raw.shutdown(socket.SHUT_WR)
        except OSError:
            pass  # peer already gone; the read side reports EOF

    def close(self):
        try:
            self._sock.close()
        finally:
            if self._raw is not self._sock:
                self._raw.close()


class DockerRuntime(Runtime):
    """Runtime backed by the local Docker daemon (docker SDK, low-level API)."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise SandboxUnavailable(
                    f"Docker is not running or not reachable: {e}"
                ) from e
        return self._client

    @property
    def api(self):
        return self.client.api

    # Images / volumes

    def image_exists(self, image):
        try:
            self.client.images.get(image)
        except ImageNotFound:
            return False
        return True

    def volume_exists(self, name):
        try:
            self.client.volumes.get(name)
        except NotFound:
            return False
        return True

    def create_volume(self, name, labels):
        try:
            self.client.volumes.create(name=name, labels=labels)
        except APIError as e:
            if e.status_code != 409:
                raise

    def remove_volume(self, name):
        self.client.volumes.get(name).remove()

    def list_volumes(self, labels):
        found = self.api.volumes(filters=_label_filters(labels)) or {}
        return [
            {
                "name": v["Name"],
                "labels": v.get("Labels") or {},
                "created": v.get("CreatedAt"),
            }
            for v in found.get("Volumes") or []
        ]

    # Containers

    def create_container(self, name, image, volume, mount_path, labels, network=None):
        host_config = self.api.create_host_config(
            mounts=[Mount(target=mount_path, source=volume, type="volume")],
            network_mode=network,
            auto_remove=False,
            restart_policy={"Name": "unless-stopped"},
        )
        result = self.api.create_container(
            image,
            command=KEEPALIVE_CMD,
            name=name,
            working_dir=mount_path,
            labels=labels,
            host_config=host_config,
        )
        return result["Id"]

    def start_container(self, container):
        self.api.start(container)

    def stop_container(self, container, timeout=10):
        self.api.stop(container, timeout=timeout)

    def remove_container(self, container):
        self.api.remove_container(container, force=True)

    def container_state(self, container):
        try:
            info = self.api.inspect_container(container)
        except NotFound:
            return None
        return "running" if info["State"].get("Running") else "stopped"

    def list_containers(self, labels):
        found = self.api.containers(all=True, filters=_label_filters(labels))
        return [
            {
                "id": c["Id"],
                "name": (c.get("Names") or ["/"])[0].lstrip("/"),
                "running": c.get("State") == "running",
                "labels": c.get("Labels") or {},
                "created": c.get("Created"),
            }
            for c in found
        ]

    # Exec

    def exec_create(self, container, argv, env=None, workdir=None, stdin=False, tty=False):
        result = self.api.exec_create(
            container,
            list(argv),
            stdout=True,
            stderr=True,
            stdin=stdin,
            tty=tty,
            environment=env,
            workdir=workdir,
        )
        return result["Id"]

    def exec_attach(self, exec_id, tty=False):
        sock = self.api.exec_start(exec_id, tty=tty, socket=True)
        return DockerExecStream(sock)

    def exec_exit_code(self, exec_id):
        try:
            return self.api.exec_inspect(exec_id).get("ExitCode")
        except APIError:
            return None

    def get_archive(self, container, path):
        try:
            bits, _stat = self.api.get_archive(container, path)
        except NotFound as e:
            raise FileNotFoundError(path) from e
        return b"".join(bits)
