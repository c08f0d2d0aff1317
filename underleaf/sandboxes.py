"""Per-(user, project) sandbox lifecycle.

Each key maps to at most one tracked container, which mounts the project's
volume at the working directory and runs a no-op foreground process so execs
can attach to it. Lifecycle per key:

    absent  -> running   create volume (if needed) + container, start, attach
    running -> running   liveness probe passes; last-used refreshed
    stopped -> running   restarted in place
    any     -> absent    probe finds nothing (stale record dropped), or
                         remove()/reaper; the volume always survives

All transitions for a key happen under that key's lock, so concurrent callers
see exactly one container created and the reaper cannot remove a sandbox that a
caller is in the middle of acquiring.
"""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from underleaf import cloudwatch
from underleaf.config import DEFAULT_CONFIG
from underleaf.errors import SandboxUnavailable, UnderleafError
from underleaf.log import write_log
from underleaf.volumes import LABEL_REPO, LABEL_TYPE, name_suffix, slug, volume_name

LABEL_USER = "underleaf.user"
LABEL_VOLUME = "underleaf.volume"
SANDBOX_TYPE = "latex"

RUNNING = "running"
STOPPED = "stopped"
ERROR = "error"


def container_name(user, project, prefix=DEFAULT_CONFIG["container_prefix"]):
    return f"{prefix}-{slug(user)}-{slug(project)}-{name_suffix(user, project)}"


@dataclass
class Sandbox:
    user: str
    project: str
    container_id: str
    name: str
    volume: str
    status: str
    created: float
    last_used: float

    @property
    def key(self):
        return (self.user, self.project)

    def to_dict(self):
        return {
            "user": self.user,
            "project": self.project,
            "container_id": self.container_id,
            "name": self.name,
            "volume": self.volume,
            "status": self.status,
            "created": self.created,
            "last_used": self.last_used,
        }


class SandboxRegistry:
    """Tracks sandboxes by (user, project) and owns their containers."""

    def __init__(self, runtime, volumes, config=None, clock=time.time):
        config = {**DEFAULT_CONFIG, **(config or {})}
        self.runtime = runtime
        self.volumes = volumes
        self.image = config["image"]
        self.network = config["network"] or None
        self.prefix = config["container_prefix"]
        self.workdir = config["workdir"]
        self.idle_timeout = config["idle_timeout"]
        self.reap_interval = config["reap_interval"]
        self.stop_timeout = config["stop_timeout"]
        self._clock = clock

        self._sandboxes = {}
        self._locks = {}
        self._guard = threading.Lock()
        self._reaper = None
        self._reaper_stop = threading.Event()

    @contextmanager
    def _key_lock(self, key):
        """Hold the key's lock. The entry is dropped once no caller holds or waits on it."""
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def _track(self, sandbox):
        with self._guard:
            self._sandboxes[sandbox.key] = sandbox

    def _untrack(self, sandbox):
        with self._guard:
            if self._sandboxes.get(sandbox.key) is sandbox:
                del self._sandboxes[sandbox.key]
        self.volumes.detach(sandbox.project, sandbox.container_id)

    # Acquisition

    def get_or_create(self, user, project):
        """Return a running sandbox for the key, creating or restarting it as needed."""
        with self._key_lock((user, project)):
            try:
                return self._acquire(user, project)
            except UnderleafError:
                raise
            except Exception as e:
                write_log({
                    "event": "sandbox_acquire_failed",
                    "user": user,
                    "project": project,
                    "error": str(e),
                })
                raise SandboxUnavailable(f"Could not reach sandbox for {user}/{project}: {e}") from e

    def _acquire(self, user, project):
        sandbox = self.info(user, project)
        if sandbox is not None:
            state = self.runtime.container_state(sandbox.container_id)
            if state == RUNNING:
                sandbox.status = RUNNING
                sandbox.last_used = self._clock()
                return sandbox
            if state == STOPPED and self._restart(sandbox):
                return sandbox
            self._untrack(sandbox)
        return self._create(user, project)

    def _restart(self, sandbox):
        t0 = time.time()
        try:
            self.runtime.start_container(sandbox.container_id)
        except Exception as e:
            sandbox.status = ERROR
            write_log({
                "event": "sandbox_restart_failed",
                "user": sandbox.user,
                "project": sandbox.project,
                "container": sandbox.name,
                "error": str(e),
            })
            return False
        sandbox.status = RUNNING
        sandbox.last_used = self._clock()
        write_log({
            "event": "sandbox_restarted",
            "user": sandbox.user,
            "project": sandbox.project,
            "container": sandbox.name,
        })
        cloudwatch.emit(f"{sandbox.user}/{sandbox.project}", "sandbox", "restart",
                        elapsed_ms=(time.time() - t0) * 1000)
        return True

    def _create(self, user, project):
        if not self.runtime.image_exists(self.image):
            raise SandboxUnavailable(
                f"Sandbox image '{self.image}' not found. Build it before starting sandboxes."
            )

        t0 = time.time()
        volume = self.volumes.get_or_create(project)
        name = container_name(user, project, self.prefix)

        # A container left over from an earlier process holds the name. It is
        # only replaced when its labels say it was this key's sandbox.
        if self.runtime.container_state(name) is not None:
            owner = self._name_owner(name)
            if owner != (user, project):
                write_log({
                    "event": "sandbox_name_taken",
                    "user": user,
                    "project": project,
                    "container": name,
                    "owner": list(owner) if owner else None,
                })
                raise SandboxUnavailable(f"Container name {name} is held by another container")
            self.runtime.remove_container(name)

        labels = {
            LABEL_USER: user,
            LABEL_REPO: project,
            LABEL_VOLUME: volume.name,
            LABEL_TYPE: SANDBOX_TYPE,
        }
        container_id = None
        try:
            container_id = self.runtime.create_container(
                name, self.image, volume.name, self.workdir, labels, network=self.network,
            )
            self.runtime.start_container(container_id)
        except Exception as e:
            write_log({
                "event": "sandbox_create_failed",
                "user": user,
                "project": project,
                "container": name,
                "error": str(e),
            })
            if container_id is not None:
                self.runtime.remove_container(container_id)
            raise SandboxUnavailable(f"Could not start sandbox {name}: {e}") from e

        now = self._clock()
        sandbox = Sandbox(
            user=user,
            project=project,
            container_id=container_id,
            name=name,
            volume=volume.name,
            status=RUNNING,
            created=now,
            last_used=now,
        )
        self._track(sandbox)
        self.volumes.attach(project, container_id)

        write_log({
            "event": "sandbox_created",
            "user": user,
            "project": project,
            "container": name,
            "volume": volume.name,
        })
        cloudwatch.emit(f"{user}/{project}", "sandbox", "create",
                        elapsed_ms=(time.time() - t0) * 1000, container=name)
        return sandbox

    def _name_owner(self, name):
        for found in self.runtime.list_containers({LABEL_TYPE: SANDBOX_TYPE}):
            if found["name"] == name:
                labels = found["labels"]
                return labels.get(LABEL_USER), labels.get(LABEL_REPO)
        return None

    # Removal

    def remove(self, user, project):
        """Stop and delete the key's container. The volume is kept.

        Returns False when nothing was tracked for the key.
        """
        with self._key_lock((user, project)):
            sandbox = self.info(user, project)
            if sandbox is None:
                return False
            self._remove_locked(sandbox, "sandbox_removed")
            return True

    def _remove_locked(self, sandbox, event):
        t0 = time.time()
        try:
            if self.runtime.container_state(sandbox.container_id) is not None:
                self.runtime.stop_container(sandbox.container_id, timeout=self.stop_timeout)
                self.runtime.remove_container(sandbox.container_id)
        except Exception as e:
            # The record goes regardless; a later get_or_create clears the name.
            write_log({
                "event": "sandbox_remove_failed",
                "user": sandbox.user,
                "project": sandbox.project,
                "container": sandbox.name,
                "error": str(e),
            })
        finally:
            self._untrack(sandbox)

        write_log({
            "event": event,
            "user": sandbox.user,
            "project": sandbox.project,
            "container": sandbox.name,
            "idle_seconds": round(self._clock() - sandbox.last_used),
        })
        cloudwatch.emit(f"{sandbox.user}/{sandbox.project}", "sandbox",
                        event.split("_", 1)[1], elapsed_ms=(time.time() - t0) * 1000)

    # Reaper

    def reap_idle(self, now=None):
        """Remove sandboxes idle longer than idle_timeout. Returns the removed keys."""
        now = self._clock() if now is None else now
        candidates = [
            s.key for s in self.all() if now - s.last_used > self.idle_timeout
        ]
        removed = []
        for key in candidates:
            with self._key_lock(key):
                sandbox = self.info(*key)
                # Re-check: a caller may have used it since the scan.
                if sandbox is None or now - sandbox.last_used <= self.idle_timeout:
                    continue
                self._remove_locked(sandbox, "sandbox_reaped")
                removed.append(key)
        return removed

    def start_reaper(self):
        if self._reaper and self._reaper.is_alive():
            return
        self._reaper_stop.clear()
        self._reaper = threading.Thread(target=self._reap_loop, name="underleaf-reaper", daemon=True)
        self._reaper.start()

    def stop_reaper(self, timeout=None):
        self._reaper_stop.set()
        if self._reaper:
            self._reaper.join(timeout)
            self._reaper = None

    def _reap_loop(self):
        while not self._reaper_stop.wait(timeout=self.reap_interval):
            self.reap_idle()

    # Startup

    def reconcile(self):
        """Rebuild sandbox and volume records from runtime labels.

        Returns the number of sandboxes adopted.
        """
        for found in self.runtime.list_volumes({LABEL_TYPE: "repository"}):
            project = found["labels"].get(LABEL_REPO)
            if project:
                self.volumes.adopt(project, found["name"])

        adopted = 0
        now = self._clock()
        for found in self.runtime.list_containers({LABEL_TYPE: SANDBOX_TYPE}):
            labels = found["labels"]
            user, project = labels.get(LABEL_USER), labels.get(LABEL_REPO)
            if not user or not project:
                continue
            volume = labels.get(LABEL_VOLUME) or volume_name(project, self.volumes.prefix)
            with self._key_lock((user, project)):
                if self.info(user, project) is not None:
                    continue
                self.volumes.adopt(project, volume, created=found.get("created"))
                sandbox = Sandbox(
                    user=user,
                    project=project,
                    container_id=found["id"],
                    name=found["name"],
                    volume=volume,
                    status=RUNNING if found["running"] else STOPPED,
                    created=found.get("created") or now,
                    last_used=now,
                )
                self._track(sandbox)
                self.volumes.attach(project, sandbox.container_id)
                adopted += 1

        write_log({"event": "reconciled", "sandboxes": adopted,
                   "volumes": len(self.volumes.all())})
        return adopted

    # Queries

    def info(self, user, project):
        with self._guard:
            return self._sandboxes.get((user, project))

    def all(self):
        with self._guard:
            return list(self._sandboxes.values())

    def for_project(self, project):
        return [s for s in self.all() if s.project == project]
