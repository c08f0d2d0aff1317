import os
from pathlib import Path

from dotenv import dotenv_values

CREDENTIALS_FILE = Path.home() / ".underleaf" / "credentials"

# Forwarded into assistant execs per call, never written into a sandbox.
ASSISTANT_VARS = ("ANTHROPIC_API_KEY",)


def load_credentials():
    """Load ~/.underleaf/credentials into os.environ.

    Format: KEY=VALUE, one per line, # comments allowed. Values already in the
    environment win.
    """
    if not CREDENTIALS_FILE.exists():
        return {}

    creds = {k: v for k, v in dotenv_values(CREDENTIALS_FILE).items() if v is not None}
    for key, value in creds.items():
        if key not in os.environ:
            os.environ[key] = value
    return creds


def save_credential(key, value):
    """Save or update a single credential in ~/.underleaf/credentials."""
    CREDENTIALS_FILE.parent.mkdir(parents=True, exist_ok=True)
    CREDENTIALS_FILE.parent.chmod(0o700)

    lines = []
    found = False
    if CREDENTIALS_FILE.exists():
        for line in CREDENTIALS_FILE.read_text().splitlines():
            stripped = line.strip()
            if stripped and not stripped.startswith("#") and "=" in stripped:
                k = stripped.split("=", 1)[0].strip()
                if k == key:
                    lines.append(f"{key}={value}")
                    found = True
                    continue
            lines.append(line)

    if not found:
        lines.append(f"{key}={value}")

    CREDENTIALS_FILE.write_text("\n".join(lines) + "\n")
    CREDENTIALS_FILE.chmod(0o600)
    os.environ[key] = value


def assistant_env():
    """Per-call environment for assistant execs."""
    return {key: os.environ[key] for key in ASSISTANT_VARS if os.environ.get(key)}
