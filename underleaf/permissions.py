"""Permission prompts raised by the assistant's permission-prompt tool.

The tool inside the sandbox drops `permission_<id>.json` into the signal
directory and waits for `response_<id>.json`. This side only reads the former
and writes the latter.
"""

import json
from datetime import datetime, timezone

from underleaf.log import write_log
from underleaf.signals import validate_name

PROMPT_PATTERN = "permission_*.json"


def prompt_file(prompt_id):
    return validate_name(f"permission_{prompt_id}.json")


def response_file(prompt_id):
    return validate_name(f"response_{prompt_id}.json")


class PermissionBroker:
    def __init__(self, channel, volumes):
        self.channel = channel
        self.volumes = volumes

    def pending(self, user, project):
        """Open prompts for the key, oldest first by file name."""
        self.volumes.require(project)
        prompts = []
        for name in self.channel.list(user, project, PROMPT_PATTERN):
            content = self.channel.read(user, project, name)
            if content is None:
                continue  # answered in the meantime
            try:
                prompts.append(json.loads(content))
            except json.JSONDecodeError:
                write_log({
                    "event": "permission_prompt_unreadable",
                    "level": "warning",
                    "user": user,
                    "project": project,
                    "file": name,
                })
        return prompts

    def respond(self, user, project, prompt_id, approved, reason=""):
        if not isinstance(approved, bool):
            raise ValueError("approved must be a boolean")
        self.volumes.require(project)
        response = {
            "promptId": prompt_id,
            "approved": approved,
            "reason": reason or "",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivery = self.channel.deliver(
            user, project, response_file(prompt_id), json.dumps(response, indent=2),
        )
        self.channel.discard(user, project, prompt_file(prompt_id))
        write_log({
            "event": "permission_response",
            "user": user,
            "project": project,
            "prompt": prompt_id,
            "approved": approved,
        })
        return delivery
