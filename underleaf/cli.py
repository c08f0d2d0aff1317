import functools
import json
import sys
import threading
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from underleaf.config import DEFAULT_CONFIG, load_config, save_global_config
from underleaf.credentials import assistant_env, load_credentials, save_credential
from underleaf.errors import CommandFailed, UnderleafError
from underleaf.log import read_logs
from underleaf.render import ChunkRenderer
from underleaf.tracing import AgentHeartbeat, StageTimer
from underleaf.volumes import CONFIRM_TOKEN

console = Console()


def _orchestrator(reaper=False):
    """Orchestrator with state rebuilt from the runtime's labels."""
    from underleaf.orchestrator import Orchestrator
    try:
        config = load_config()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    orch = Orchestrator(config)
    orch.start(reaper=reaper)
    return orch


def _handles_errors(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except CommandFailed as e:
            console.print(f"[red]Exit code {e.exit_code}[/red]")
            if e.stdout:
                console.print(e.stdout, highlight=False, markup=False)
            if e.stderr:
                console.print(e.stderr, highlight=False, markup=False, style="red")
            raise SystemExit(e.exit_code or 1)
        except (UnderleafError, ValueError) as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
    return wrapper


def _when(ts):
    if not ts:
        return ""
    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts).strftime("%m-%d %H:%M")
    try:
        return datetime.fromisoformat(ts).strftime("%m-%d %H:%M")
    except ValueError:
        return str(ts)


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Underleaf: per-user LaTeX sandboxes with an AI assistant."""
    load_credentials()


@main.command()
@click.argument("key")
@click.argument("value")
def auth(key, value):
    """Save a credential. Stored in ~/.underleaf/credentials.

    Example:
        underleaf auth ANTHROPIC_API_KEY sk-ant-...
    """
    save_credential(key, value)
    click.echo(f"Saved {key} to ~/.underleaf/credentials")


@main.command("config")
@click.argument("key", required=False)
@click.argument("value", required=False)
def config_cmd(key, value):
    """Show the effective config, or set KEY to VALUE in ~/.underleaf/config.json.

    VALUE is parsed as JSON when it can be (numbers, true/false), else kept as text.
    """
    if key is None:
        try:
            config = load_config()
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        table = Table(title="Config")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for k in sorted(config):
            style = None if config[k] == DEFAULT_CONFIG.get(k) else "cyan"
            table.add_row(k, str(config[k]), style=style)
        console.print(table)
        return

    if key not in DEFAULT_CONFIG:
        console.print(f"[red]Unknown config key: {key}[/red]")
        raise SystemExit(1)
    if value is None:
        console.print(f"[red]Missing value for {key}[/red]")
        raise SystemExit(1)
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    save_global_config({key: parsed})
    click.echo(f"Saved {key} to ~/.underleaf/config.json")


@main.command()
@click.argument("user")
@click.argument("project")
@_handles_errors
def ensure(user, project):
    """Create (or wake) the sandbox for USER on PROJECT."""
    orch = _orchestrator()
    timer = StageTimer(console, trace_id=f"{user}/{project}")
    sandbox = orch.ensure(user, project)
    timer.mark("sandbox")
    console.print(f"[green]{sandbox.name}[/green]  volume [cyan]{sandbox.volume}[/cyan]")


@main.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("user")
@click.argument("project")
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--stdin", "use_stdin", is_flag=True, help="Forward this process's stdin to the command.")
@_handles_errors
def exec_cmd(user, project, argv, use_stdin):
    """Run a command in the sandbox's working directory.

    Example: underleaf exec alice thesis -- git status
    """
    orch = _orchestrator()
    data = sys.stdin.read() if use_stdin else None
    out = orch.run(user, project, list(argv), stdin=data)
    if out.stdout:
        click.echo(out.stdout)
    if out.stderr:
        click.echo(out.stderr, err=True)


@main.command()
@click.argument("user")
@click.argument("project")
def shell(user, project):
    """Multi-turn assistant session. Commands: clear, exit."""
    orch = _orchestrator()
    console.print(f"[bold]Underleaf assistant[/bold]  [dim]{user}/{project}[/dim]")
    if not assistant_env() and not orch.assistant.is_authenticated(user, project):
        console.print(f"[yellow]Assistant is not signed in. Run: underleaf login {user} {project}[/yellow]")
    console.print("[dim]Type a message. Commands: clear (new conversation), exit[/dim]\n")

    while True:
        try:
            message = input(f"{project}> ").strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not message:
            continue
        if message in ("exit", "quit"):
            break
        if message == "clear":
            orch.assistant.clear_session(user, project)
            console.print("[dim]Conversation cleared.[/dim]")
            continue

        renderer = ChunkRenderer(console, trace_id=f"{user}/{project}")
        heartbeat = AgentHeartbeat(console)
        heartbeat.start()
        turn = orch.assistant.stream_turn(user, project, message)
        try:
            for chunk in turn:
                heartbeat.stop()
                renderer.feed(chunk)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted.[/yellow]")
        except UnderleafError as e:
            console.print(f"[red]{e}[/red]")
        finally:
            heartbeat.stop()
            turn.close()
            renderer.finish()


@main.command()
@click.argument("user")
@click.argument("project")
@_handles_errors
def login(user, project):
    """Sign the sandbox's assistant CLI in to a Claude account."""
    orch = _orchestrator()
    orch.volumes.get_or_create(project)
    console.print("[bold]Starting sign-in...[/bold]")
    status = orch.auth.start(user, project)

    if status.step == "already_configured":
        console.print("[green]Already signed in.[/green]")
        return
    if status.step == "completed":
        console.print("[green]Signed in.[/green]")
        return

    console.print("  1. Open this URL and sign in:")
    console.print(f"     [cyan]{status.url}[/cyan]", highlight=False, soft_wrap=True)
    console.print("  2. Paste the code you receive.")
    try:
        code = click.prompt("  Code", hide_input=False).strip()
    except click.Abort:
        orch.auth.cancel(user, project)
        raise
    orch.auth.verify(user, project, code)
    console.print("[bold green]Signed in.[/bold green]")


@main.command()
@click.option("--project", default=None, help="Only sandboxes for this project.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@_handles_errors
def ps(project, as_json):
    """List tracked sandboxes."""
    orch = _orchestrator()
    sandboxes = orch.sandboxes.for_project(project) if project else orch.sandboxes.all()
    if as_json:
        click.echo(json.dumps([s.to_dict() for s in sorted(sandboxes, key=lambda s: s.key)], indent=2))
        return
    if not sandboxes:
        console.print("[dim]No sandboxes.[/dim]")
        return

    table = Table(title="Sandboxes")
    table.add_column("User", style="bold")
    table.add_column("Project", style="cyan")
    table.add_column("Container", style="dim")
    table.add_column("Volume", style="dim")
    table.add_column("Status")
    table.add_column("Created", style="dim")

    for s in sorted(sandboxes, key=lambda s: s.key):
        status = {"running": "[green]running[/green]", "error": "[red]error[/red]"}.get(s.status, s.status)
        table.add_row(s.user, s.project, s.name, s.volume, status, _when(s.created))
    console.print(table)


@main.command()
@click.argument("user")
@click.argument("project")
@_handles_errors
def rm(user, project):
    """Stop and remove a sandbox. The project volume is kept."""
    orch = _orchestrator()
    if orch.sandboxes.remove(user, project):
        console.print(f"[red]Removed[/red] sandbox for {user}/{project}")
    else:
        console.print("[dim]No sandbox tracked for that user and project.[/dim]")


@main.command()
@_handles_errors
def volumes():
    """List project volumes."""
    orch = _orchestrator()
    found = orch.volumes.all()
    if not found:
        console.print("[dim]No volumes.[/dim]")
        return

    table = Table(title="Volumes")
    table.add_column("Project", style="cyan")
    table.add_column("Volume", style="dim")
    table.add_column("Sandboxes", justify="right")
    for v in sorted(found, key=lambda v: v.project):
        table.add_row(v.project, v.name, str(len(v.sandboxes)))
    console.print(table)


@main.command("volume-delete")
@click.argument("project")
@click.option("--confirm", default="", help=f"Must be {CONFIRM_TOKEN}.")
@_handles_errors
def volume_delete(project, confirm):
    """Permanently delete a project's volume and all uncommitted work on it."""
    orch = _orchestrator()
    volume = orch.volumes.force_delete(project, confirm)
    console.print(f"[red]Deleted[/red] {volume.name}")


@main.command()
@_handles_errors
def reap():
    """Remove idle sandboxes now."""
    orch = _orchestrator()
    removed = orch.sandboxes.reap_idle()
    if not removed:
        console.print("[dim]Nothing idle.[/dim]")
    for user, project in removed:
        console.print(f"  [red]Reaped[/red] {user}/{project}")


@main.command()
@_handles_errors
def reaper():
    """Run the idle reaper in the foreground until interrupted."""
    orch = _orchestrator(reaper=True)
    console.print(
        f"[bold]Reaper running[/bold] [dim](every {orch.sandboxes.reap_interval}s, "
        f"idle after {orch.sandboxes.idle_timeout}s)[/dim]"
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping.[/dim]")
    finally:
        orch.stop()


@main.command()
@click.argument("user")
@click.argument("project")
@_handles_errors
def permissions(user, project):
    """Show the assistant's open permission prompts."""
    orch = _orchestrator()
    prompts = orch.permissions.pending(user, project)
    if not prompts:
        console.print("[dim]No pending prompts.[/dim]")
        return

    table = Table(title="Permission prompts")
    table.add_column("ID", style="bold cyan")
    table.add_column("Action")
    table.add_column("Severity")
    table.add_column("Message", max_width=60)
    for p in prompts:
        table.add_row(
            str(p.get("id", "")),
            str(p.get("action", "")),
            str(p.get("severity", "")),
            str(p.get("message", "")),
        )
    console.print(table)


@main.command()
@click.argument("user")
@click.argument("project")
@click.argument("prompt_id")
@click.option("--deny", is_flag=True, help="Deny instead of approve.")
@click.option("--reason", default="", help="Reason passed back to the assistant.")
@_handles_errors
def permit(user, project, prompt_id, deny, reason):
    """Answer a permission prompt (approve by default)."""
    orch = _orchestrator()
    orch.permissions.respond(user, project, prompt_id, not deny, reason)
    verdict = "[red]denied[/red]" if deny else "[green]approved[/green]"
    console.print(f"{prompt_id} {verdict}")


@main.command("compile")
@click.argument("user")
@click.argument("project")
@click.argument("tex_file", default="main.tex")
@click.option("-o", "--output", type=click.Path(dir_okay=False), default=None,
              help="Copy the PDF to this local path.")
@_handles_errors
def compile_cmd(user, project, tex_file, output):
    """Compile a LaTeX project inside its sandbox."""
    orch = _orchestrator()
    console.print(f"[bold]Compiling {user}/{project}...[/bold]")
    timer = StageTimer(console, trace_id=f"{user}/{project}")
    result = orch.latex.compile(user, project, tex_file, timer=timer)
    console.print(
        f"[green]{result.pdf_file}[/green]  {result.size} bytes  "
        f"[dim]via {result.strategy} in {timer.total():.1f}s[/dim]"
    )
    if output:
        Path(output).write_bytes(orch.files.fetch_pdf(user, project, result.pdf_file))
        console.print(f"  Saved to {output}")


@main.command()
@click.option("-n", "--limit", default=20, help="Number of log entries to show.")
@click.option("--user", default=None, help="Only entries for this user.")
@click.option("--project", default=None, help="Only entries for this project.")
def logs(limit, user, project):
    """Show the audit log."""
    entries = read_logs(user=user, project=project)
    if not entries:
        console.print("[dim]No logs found.[/dim]")
        return

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="bold")
    table.add_column("User")
    table.add_column("Project", style="cyan")
    table.add_column("Detail", max_width=60)

    for entry in entries[-limit:]:
        event = entry.get("event", "")
        if entry.get("level") == "warning" or event.endswith("failed"):
            event = f"[yellow]{event}[/yellow]"
        detail = entry.get("error") or entry.get("container") or entry.get("volume") or entry.get("detail") or ""
        table.add_row(
            _when(entry.get("timestamp")),
            event,
            entry.get("user", ""),
            entry.get("project", ""),
            str(detail),
        )

    console.print(table)
