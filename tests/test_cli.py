import json

import pytest
from click.testing import CliRunner
from rich.console import Console

from underleaf import cli, config, credentials, orchestrator
from underleaf.sandboxes import container_name
from underleaf.volumes import CONFIRM_TOKEN, volume_name

from conftest import FakeRuntime


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    """One fake runtime shared by every command, like one Docker daemon."""
    rt = FakeRuntime()
    monkeypatch.setattr(orchestrator, "create_runtime", lambda: rt)
    monkeypatch.setattr(config, "GLOBAL_CONFIG_FILE", tmp_path / "config.json")
    monkeypatch.setattr(credentials, "CREDENTIALS_FILE", tmp_path / "credentials")
    monkeypatch.delenv(config.CONFIG_ENV, raising=False)
    return rt


@pytest.fixture
def invoke(runtime, monkeypatch):
    monkeypatch.setattr(cli, "console", Console(width=200))
    runner = CliRunner()

    def run(*args, **kwargs):
        return runner.invoke(cli.main, list(args), catch_exceptions=False, **kwargs)

    return run


def test_ensure_creates_sandbox_and_settings(invoke, runtime):
    result = invoke("ensure", "alice", "thesis")

    assert result.exit_code == 0
    assert container_name("alice", "thesis") in result.output
    container = runtime.containers[runtime.created[0]]
    assert container["volume"] == volume_name("thesis")
    assert "/workdir/.claude/settings.json" in runtime.files(container["id"])


def test_state_is_adopted_across_invocations(invoke, runtime):
    invoke("ensure", "alice", "thesis")
    invoke("ensure", "alice", "thesis")
    assert len(runtime.created) == 1

    result = invoke("ps")
    assert "alice" in result.output
    assert "thesis" in result.output


def test_exec_prints_output(invoke, runtime):
    runtime.on(["git", "status"], ("On branch main\n", "", 0))

    result = invoke("exec", "alice", "thesis", "--", "git", "status")

    assert result.exit_code == 0
    assert "On branch main" in result.output


def test_exec_forwards_stdin(invoke, runtime):
    runtime.on(["sh", "-c", "cat > notes.txt"], ("", "", 0))
    result = invoke("exec", "--stdin", "alice", "thesis", "--", "sh", "-c", "cat > notes.txt",
                    input="draft\n")
    assert result.exit_code == 0
    ex = [e for e in runtime.execs.values() if e.argv[:2] == ["sh", "-c"]][-1]
    assert ex.stdin_data == b"draft\n"


def test_exec_failure_exit_code(invoke, runtime):
    runtime.on(["git", "commit"], ("nothing to commit, working tree clean\n", "", 1))

    result = invoke("exec", "alice", "thesis", "--", "git", "commit", "-m", "wip")

    assert result.exit_code == 1
    assert "nothing to commit" in result.output


def test_missing_image_is_reported(invoke, runtime):
    runtime.images.clear()
    result = invoke("ensure", "alice", "thesis")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_rm_keeps_the_volume(invoke, runtime):
    invoke("ensure", "alice", "thesis")

    result = invoke("rm", "alice", "thesis")

    assert "Removed" in result.output
    assert runtime.containers == {}
    assert volume_name("thesis") in runtime.volumes
    assert "No sandbox" in invoke("rm", "alice", "thesis").output


def test_volume_delete_requires_confirmation(invoke, runtime):
    invoke("ensure", "alice", "thesis")
    invoke("rm", "alice", "thesis")

    refused = invoke("volume-delete", "thesis")
    assert refused.exit_code == 1
    assert volume_name("thesis") in runtime.volumes

    result = invoke("volume-delete", "thesis", "--confirm", CONFIRM_TOKEN)
    assert result.exit_code == 0
    assert runtime.volumes == {}


def test_volume_in_use_is_refused(invoke, runtime):
    invoke("ensure", "alice", "thesis")
    result = invoke("volume-delete", "thesis", "--confirm", CONFIRM_TOKEN)
    assert result.exit_code == 1
    assert volume_name("thesis") in runtime.volumes


def test_volumes_lists_projects(invoke):
    invoke("ensure", "alice", "thesis")
    invoke("ensure", "bob", "thesis")
    result = invoke("volumes")
    assert "thesis" in result.output


def test_permissions_and_permit(invoke, runtime):
    invoke("ensure", "alice", "thesis")
    files = runtime.files(runtime.created[0])
    files["/tmp/claude-comm/permission_p1.json"] = json.dumps(
        {"id": "p1", "action": "Bash", "message": "make clean", "severity": "low"}
    )

    listed = invoke("permissions", "alice", "thesis")
    assert "p1" in listed.output

    result = invoke("permit", "alice", "thesis", "p1", "--deny", "--reason", "no")
    assert result.exit_code == 0
    response = json.loads(files["/tmp/claude-comm/response_p1.json"])
    assert response["approved"] is False
    assert response["reason"] == "no"


def test_auth_saves_credential(invoke, tmp_path, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    result = invoke("auth", "ANTHROPIC_API_KEY", "sk-test")
    assert result.exit_code == 0
    assert "ANTHROPIC_API_KEY=sk-test" in (tmp_path / "credentials").read_text()


def test_logs(invoke):
    invoke("ensure", "alice", "thesis")
    result = invoke("logs", "--user", "alice")
    assert "sandbox_created" in result.output


def test_invalid_config_file(invoke, tmp_path, monkeypatch):
    bad = tmp_path / "bad.json"
    bad.write_text("{")
    monkeypatch.setenv(config.CONFIG_ENV, str(bad))
    result = invoke("ps")
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output


def test_ps_json(invoke):
    invoke("ensure", "alice", "thesis")
    result = invoke("ps", "--json")
    listed = json.loads(result.output)
    assert listed[0]["user"] == "alice"
    assert listed[0]["volume"] == volume_name("thesis")
    assert listed[0]["status"] == "running"


def test_config_set_and_show(invoke, tmp_path):
    assert invoke("config", "idle_timeout", "600").exit_code == 0
    assert invoke("config", "image", "tex:2025").exit_code == 0
    saved = json.loads((tmp_path / "config.json").read_text())
    assert saved == {"idle_timeout": 600, "image": "tex:2025"}

    shown = invoke("config")
    assert "tex:2025" in shown.output


def test_config_unknown_key(invoke):
    result = invoke("config", "colour", "blue")
    assert result.exit_code == 1
    assert "Unknown config key" in result.output
