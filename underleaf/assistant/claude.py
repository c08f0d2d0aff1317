import json

from underleaf.errors import CommandFailed
from underleaf.log import write_log

_FLAGS = ["--print", "--verbose", "--output-format", "stream-json"]

SETTINGS_PATH = ".claude/settings.json"
PERMISSION_TOOL = "mcp__underleaf_permissions__permission_prompt"

SETTINGS = {
    "includeCoAuthoredBy": False,
    "permissions": {
        "allow": [
            "Bash",
            "Edit",
            "MultiEdit",
            "NotebookEdit",
            "WebFetch",
            "WebSearch",
            "Write",
        ]
    },
}

_UNAUTHENTICATED = ("not authenticated", "no valid")


def build_turn_argv(message, resume=None, use_settings=False):
    argv = ["claude", *_FLAGS]
    if use_settings:
        argv += ["--mcp-config", SETTINGS_PATH, "--permission-prompt-tool", PERMISSION_TOOL]
    if resume:
        argv += ["--resume", resume]
    argv += ["--", message]
    return argv


def has_settings(executor, user, project):
    try:
        executor.run(user, project, ["test", "-f", SETTINGS_PATH])
    except CommandFailed:
        return False
    return True


def ensure_settings(executor, user, project):
    """Write .claude/settings.json into the project. Best-effort; returns success."""
    try:
        executor.run(user, project, ["mkdir", "-p", ".claude"])
        executor.run(user, project, ["sh", "-c", 'cat > "$1"', "sh", SETTINGS_PATH],
                     stdin=json.dumps(SETTINGS, indent=2) + "\n")
    except CommandFailed as e:
        write_log({
            "event": "settings_write_failed",
            "level": "warning",
            "user": user,
            "project": project,
            "error": str(e),
        })
        return False
    return True


def whoami(executor, user, project, extra_env=None):
    """True when the assistant CLI in the sandbox reports a signed-in account."""
    try:
        out = executor.run(user, project, ["claude", "auth", "whoami"], extra_env=extra_env)
    except CommandFailed:
        return False
    text = out.stdout.lower()
    return bool(text) and not any(marker in text for marker in _UNAUTHENTICATED)
