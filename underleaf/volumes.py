"""Persistent per-project volumes.

A project's volume is named deterministically from the project and created at
most once. It is never removed as a side effect of anything else: the only way
out is force_delete() with the confirmation token, and only while no sandbox
mounts it.
"""

import hashlib
import re
import threading
import time
from dataclasses import dataclass, field

from underleaf.errors import ConfirmationRequired, NotFound, VolumeInUse
from underleaf.log import write_log

VOLUME_PREFIX = "underleaf-repo"
CONFIRM_TOKEN = "DELETE_ALL_DATA"

LABEL_REPO = "underleaf.repo"
LABEL_TYPE = "underleaf.type"
VOLUME_TYPE = "repository"


def slug(value):
    """Make a value safe for Docker object names."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "-", str(value)).strip("-.")
    return cleaned or "x"


def name_suffix(*parts):
    """Short digest of the raw parts, so keys that slug alike still get distinct names."""
    raw = "\0".join(str(p) for p in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8]


def volume_name(project, prefix=VOLUME_PREFIX):
    return f"{prefix}-{slug(project)}-{name_suffix(project)}"


@dataclass
class Volume:
    project: str
    name: str
    created: float
    last_used: float
    sandboxes: set = field(default_factory=set)

    @property
    def in_use(self):
        return bool(self.sandboxes)


class VolumeRegistry:
    def __init__(self, runtime, prefix=VOLUME_PREFIX, clock=time.time):
        self.runtime = runtime
        self.prefix = prefix
        self._clock = clock
        self._volumes = {}
        self._lock = threading.Lock()

    def get_or_create(self, project):
        """Return the project's volume, creating the runtime volume if needed."""
        with self._lock:
            now = self._clock()
            volume = self._volumes.get(project)
            if volume:
                volume.last_used = now
                return volume

            name = volume_name(project, self.prefix)
            if not self.runtime.volume_exists(name):
                self.runtime.create_volume(name, {
                    LABEL_REPO: project,
                    LABEL_TYPE: VOLUME_TYPE,
                })
                write_log({"event": "volume_created", "project": project, "volume": name})

            volume = Volume(project=project, name=name, created=now, last_used=now)
            self._volumes[project] = volume
            return volume

    def get(self, project):
        with self._lock:
            return self._volumes.get(project)

    def require(self, project):
        volume = self.get(project)
        if volume is None:
            raise NotFound(f"Repository not found: {project}")
        return volume

    def all(self):
        with self._lock:
            return list(self._volumes.values())

    def force_delete(self, project, confirm):
        """Irreversibly delete a project's volume and everything on it."""
        if confirm != CONFIRM_TOKEN:
            raise ConfirmationRequired(
                f"Refusing to delete volume for {project}: pass confirm={CONFIRM_TOKEN!r}"
            )
        with self._lock:
            volume = self._volumes.get(project)
            if volume is None:
                raise NotFound(f"Repository not found: {project}")
            if volume.in_use:
                raise VolumeInUse(
                    f"Volume {volume.name} is mounted by {len(volume.sandboxes)} sandbox(es)"
                )
            if self.runtime.volume_exists(volume.name):
                self.runtime.remove_volume(volume.name)
            del self._volumes[project]

        write_log({"event": "volume_deleted", "project": project, "volume": volume.name})
        return volume

    def attach(self, project, sandbox_id):
        with self._lock:
            volume = self._volumes.get(project)
            if volume is None:
                raise NotFound(f"Repository not found: {project}")
            volume.sandboxes.add(sandbox_id)
            volume.last_used = self._clock()

    def detach(self, project, sandbox_id):
        with self._lock:
            volume = self._volumes.get(project)
            if volume:
                volume.sandboxes.discard(sandbox_id)

    def adopt(self, project, name, created=None):
        """Track a volume found on the runtime (startup reconciliation)."""
        with self._lock:
            volume = self._volumes.get(project)
            if volume is None:
                now = self._clock()
                volume = Volume(
                    project=project,
                    name=name,
                    created=created if created is not None else now,
                    last_used=now,
                )
                self._volumes[project] = volume
            return volume
