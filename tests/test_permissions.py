import json

import pytest

from underleaf.errors import NotFound
from underleaf.log import read_logs
from underleaf.permissions import PermissionBroker

DIR = "/tmp/claude-comm"


@pytest.fixture
def broker(channel, volumes):
    return PermissionBroker(channel, volumes)


@pytest.fixture
def signal_files(runtime, registry):
    return runtime.files(registry.get_or_create("alice", "thesis").container_id)


def test_pending_lists_open_prompts(broker, signal_files):
    signal_files[f"{DIR}/permission_b2.json"] = json.dumps(
        {"id": "b2", "action": "Bash", "message": "rm -rf build/", "severity": "high"}
    )
    signal_files[f"{DIR}/permission_a1.json"] = json.dumps({"id": "a1", "action": "Write"})
    signal_files[f"{DIR}/response_z9.json"] = "{}"

    prompts = broker.pending("alice", "thesis")

    assert [p["id"] for p in prompts] == ["a1", "b2"]
    assert prompts[1]["severity"] == "high"


def test_unreadable_prompt_is_skipped_and_logged(broker, signal_files):
    signal_files[f"{DIR}/permission_x.json"] = "{not json"
    assert broker.pending("alice", "thesis") == []
    assert read_logs()[-1]["event"] == "permission_prompt_unreadable"


def test_respond_writes_response_and_clears_prompt(broker, signal_files):
    signal_files[f"{DIR}/permission_a1.json"] = json.dumps({"id": "a1"})

    delivery = broker.respond("alice", "thesis", "a1", False, "not during review")

    assert delivery.confirmed
    response = json.loads(signal_files[f"{DIR}/response_a1.json"])
    assert response["promptId"] == "a1"
    assert response["approved"] is False
    assert response["reason"] == "not during review"
    assert response["timestamp"]
    assert f"{DIR}/permission_a1.json" not in signal_files
    assert read_logs()[-1]["event"] == "permission_response"


def test_respond_tolerates_the_tool_taking_the_response(broker, runtime, signal_files):
    runtime.on_write = lambda rt, container, path: rt.fs[container].pop(path)
    delivery = broker.respond("alice", "thesis", "a1", True)
    assert delivery.consumed


def test_respond_requires_a_boolean(broker, signal_files):
    with pytest.raises(ValueError):
        broker.respond("alice", "thesis", "a1", "yes")


def test_prompt_id_cannot_escape_the_directory(broker, signal_files):
    with pytest.raises(ValueError):
        broker.respond("alice", "thesis", "../../etc/passwd", True)


def test_unknown_project(broker):
    with pytest.raises(NotFound):
        broker.pending("alice", "thesis")
    with pytest.raises(NotFound):
        broker.respond("alice", "thesis", "a1", True)
