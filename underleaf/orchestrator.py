import time

from underleaf import cloudwatch
from underleaf.assistant.auth import AuthWizard
from underleaf.assistant.bridge import AssistantBridge
from underleaf.assistant.claude import ensure_settings, has_settings
from underleaf.config import load_config
from underleaf.credentials import assistant_env
from underleaf.executor import CommandExecutor
from underleaf.files import FileFetcher
from underleaf.latex import LatexCompiler
from underleaf.log import write_log
from underleaf.permissions import PermissionBroker
from underleaf.runtime import create_runtime
from underleaf.sandboxes import SandboxRegistry
from underleaf.signals import SignalFileChannel
from underleaf.volumes import VolumeRegistry


class Orchestrator:
    """Wires the registries, executor and session bridges from one config.

    One instance per process. start() adopts whatever an earlier process left
    running and starts the idle reaper; stop() stops the reaper and leaves
    containers running for the next start().
    """

    def __init__(self, config=None, runtime=None, clock=time.time):
        self.config = config if config is not None else load_config()
        self.runtime = runtime or create_runtime()

        self.volumes = VolumeRegistry(self.runtime, self.config["volume_prefix"], clock=clock)
        self.sandboxes = SandboxRegistry(self.runtime, self.volumes, self.config, clock=clock)
        self.executor = CommandExecutor(self.sandboxes, self.runtime, self.config["workdir"])
        self.signals = SignalFileChannel(
            self.executor,
            directory=self.config["signal_dir"],
            poll_interval=self.config["signal_poll_interval"],
        )
        self.assistant = AssistantBridge(self.executor, env=assistant_env)
        self.auth = AuthWizard(
            self.executor,
            self.signals,
            self.volumes,
            setup_timeout=self.config["setup_timeout"],
            verify_timeout=self.config["verify_timeout"],
        )
        self.permissions = PermissionBroker(self.signals, self.volumes)
        self.latex = LatexCompiler(self.executor)
        self.files = FileFetcher(self.sandboxes, self.runtime, self.config["workdir"])
        self.started = False

    def start(self, reaper=True):
        cloudwatch.init(self.config.get("cloudwatch_log_group", ""))

        adopted = self.sandboxes.reconcile()
        if reaper:
            self.sandboxes.start_reaper()
        self.started = True
        write_log({"event": "started", "sandboxes": adopted, "reaper": reaper,
                   "cloudwatch": cloudwatch.enabled()})
        return adopted

    def stop(self):
        self.sandboxes.stop_reaper()
        cloudwatch.shutdown()
        self.started = False

    def ensure(self, user, project):
        """Sandbox for the key, with the assistant settings file in place."""
        sandbox = self.sandboxes.get_or_create(user, project)
        if not has_settings(self.executor, user, project):
            ensure_settings(self.executor, user, project)
        return sandbox

    def run(self, user, project, argv, stdin=None, extra_env=None):
        return self.executor.run(user, project, argv, stdin=stdin, extra_env=extra_env)
