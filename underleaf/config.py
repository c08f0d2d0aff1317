import json
import os
from pathlib import Path

CONFIG_ENV = "UNDERLEAF_CONFIG"
GLOBAL_CONFIG_FILE = Path.home() / ".underleaf" / "config.json"

DEFAULT_CONFIG = {
    "image": "underleaf-latex:latest",
    "network": "underleaf_web",
    "container_prefix": "underleaf-user",
    "volume_prefix": "underleaf-repo",
    "workdir": "/workdir",
    "idle_timeout": 3600,       # seconds without use before the reaper removes a sandbox
    "reap_interval": 1800,
    "stop_timeout": 10,
    "setup_timeout": 300,       # auth wizard: time to reach the sign-in URL
    "verify_timeout": 90,
    "signal_dir": "/tmp/claude-comm",
    "signal_poll_interval": 0.2,
    # Optional: "cloudwatch_log_group": "/underleaf/prod"
    "cloudwatch_log_group": "",
}

NUMERIC_KEYS = {
    "idle_timeout", "reap_interval", "stop_timeout",
    "setup_timeout", "verify_timeout", "signal_poll_interval",
}


def load_global_config():
    """Load ~/.underleaf/config.json, the per-host defaults."""
    if GLOBAL_CONFIG_FILE.exists():
        try:
            return json.loads(GLOBAL_CONFIG_FILE.read_text())
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def save_global_config(updates):
    """Merge updates into ~/.underleaf/config.json."""
    existing = load_global_config()
    existing.update(updates)
    GLOBAL_CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    GLOBAL_CONFIG_FILE.write_text(json.dumps(existing, indent=2) + "\n")


def find_config():
    """Path named by $UNDERLEAF_CONFIG, if set."""
    value = os.environ.get(CONFIG_ENV)
    return Path(value).expanduser() if value else None


def load_config(path=None):
    # Merge order: defaults → global config → explicit file
    config = {**DEFAULT_CONFIG, **load_global_config()}

    config_path = Path(path) if path else find_config()
    if config_path:
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
        except OSError as e:
            raise ValueError(f"Cannot read config {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path} must contain a JSON object")
        config.update(raw)

    for key in NUMERIC_KEYS:
        if not isinstance(config[key], (int, float)) or config[key] < 0:
            raise ValueError(f"Config key {key!r} must be a non-negative number")

    return config
