"""Audit logging.

Appends structured JSON entries to ~/.underleaf/logs.jsonl.
Each entry records a lifecycle event (sandbox created, restarted, removed or
reaped; volume created or deleted; command failure; signal warning; auth
milestone) with timestamp, user and project.
"""

import json
import threading
from datetime import datetime
from pathlib import Path

LOGS_FILE = Path.home() / ".underleaf" / "logs.jsonl"

_lock = threading.Lock()


def write_log(entry):
    """Append an audit log entry."""
    entry = {**entry, "timestamp": datetime.now().isoformat()}
    line = json.dumps(entry, default=str) + "\n"
    with _lock:
        LOGS_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(LOGS_FILE, "a") as f:
            f.write(line)


def read_logs(user=None, project=None):
    """Parsed log entries, oldest first. Unparseable lines are skipped."""
    if not LOGS_FILE.exists():
        return []
    entries = []
    for line in LOGS_FILE.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if user and entry.get("user") != user:
            continue
        if project and entry.get("project") != project:
            continue
        entries.append(entry)
    return entries
