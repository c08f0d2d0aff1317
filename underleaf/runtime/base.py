from abc import ABC, abstractmethod


class ExecStream(ABC):
    """Raw, bidirectional byte stream attached to a running exec.

    Non-TTY execs carry multiplexed frames (see underleaf.stream); TTY execs
    carry the terminal's bytes as-is.
    """

    @abstractmethod
    def read(self, size=65536):
        """Return the next bytes available, or b"" at end of stream."""
        pass

    @abstractmethod
    def write(self, data):
        pass

    @abstractmethod
    def close_write(self):
        """Half-close the input side so the process sees EOF on stdin."""
        pass

    @abstractmethod
    def close(self):
        pass

    def __iter__(self):
        while True:
            chunk = self.read()
            if not chunk:
                return
            yield chunk


class Runtime(ABC):
    """Base interface for container runtimes.

    Implementations: DockerRuntime. Tests provide an in-memory one.
    Methods that take a container accept its id or name.
    """

    @abstractmethod
    def image_exists(self, image):
        pass

    @abstractmethod
    def volume_exists(self, name):
        pass

    @abstractmethod
    def create_volume(self, name, labels):
        """Create a named volume. An existing volume of that name is not an error."""
        pass

    @abstractmethod
    def remove_volume(self, name):
        pass

    @abstractmethod
    def list_volumes(self, labels):
        """Volumes matching every label. Returns [{"name", "labels", "created"}]."""
        pass

    @abstractmethod
    def create_container(self, name, image, volume, mount_path, labels, network=None):
        """Create (not start) a container running a no-op foreground process.

        Returns the container id.
        """
        pass

    @abstractmethod
    def start_container(self, container):
        pass

    @abstractmethod
    def stop_container(self, container, timeout=10):
        pass

    @abstractmethod
    def remove_container(self, container):
        pass

    @abstractmethod
    def container_state(self, container):
        """Return "running", "stopped", or None if the container does not exist."""
        pass

    @abstractmethod
    def list_containers(self, labels):
        """Containers (running or not) matching every label.

        Returns [{"id", "name", "running", "labels", "created"}] with created as
        a unix timestamp.
        """
        pass

    @abstractmethod
    def exec_create(self, container, argv, env=None, workdir=None, stdin=False, tty=False):
        """Prepare an exec. Returns an exec id."""
        pass

    @abstractmethod
    def exec_attach(self, exec_id, tty=False):
        """Start the exec and return its ExecStream."""
        pass

    @abstractmethod
    def exec_exit_code(self, exec_id):
        """Exit code of a finished exec, or None when the runtime cannot tell."""
        pass

    @abstractmethod
    def get_archive(self, container, path):
        """Return a tar archive (bytes) holding the file or directory at path."""
        pass
