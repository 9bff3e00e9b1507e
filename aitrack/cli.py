"""aitrack CLI - line-level human/AI authorship for git repositories."""

import json
import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from aitrack import __version__, git
from aitrack import config as config_module
from aitrack.checkpoint import AgentRef, CheckpointKind, CheckpointLog
from aitrack.config import POST_COMMIT_POLICIES, TrackConfig, get_track_config, get_track_dir
from aitrack.errors import AiTrackException, LogSealedError, NoChangesError, format_error
from aitrack.hooks import post_commit, pre_commit, resolve_author_identity
from aitrack.query import QueryEngine

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    git_dir = git.get_git_dir()
    level_name = "DEBUG" if verbose else get_track_config(git_dir).log_level
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _fail(message: str) -> None:
    err_console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _open_log() -> CheckpointLog:
    try:
        return CheckpointLog.open()
    except ValueError as e:
        _fail(str(e))


def _engine() -> QueryEngine:
    repo_root = git.get_repo_root()
    if repo_root is None:
        _fail("Not inside a git working tree")
    return QueryEngine(repo_root)


def _format_ts(timestamp_ms):
    if timestamp_ms is None:
        return "-"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _author_style(author_id: str) -> str:
    if author_id.startswith("AiAgent"):
        return f"[magenta]{author_id}[/magenta]"
    if author_id == "Human":
        return f"[green]{author_id}[/green]"
    return f"[dim]{author_id}[/dim]"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
def main(verbose):
    """aitrack: track human vs AI authorship per line."""
    _setup_logging(verbose)


# =============================================================================
# Producers
# =============================================================================


@main.command()
@click.argument("paths", nargs=-1)
@click.option(
    "--kind",
    type=click.Choice(["Human", "AiAgent"], case_sensitive=False),
    default="Human",
    help="Who made the edits",
)
@click.option("--tool", help="Agent tool name (AiAgent only)")
@click.option("--agent-id", help="Agent session id (AiAgent only)")
@click.option("--model", help="Model the agent used (AiAgent only)")
@click.option("--reset", is_flag=True, help="Discard the active checkpoint log")
def checkpoint(paths, kind, tool, agent_id, model, reset):
    """Snapshot changed files as a checkpoint."""
    log = _open_log()

    if reset:
        if log.reset():
            console.print("[green]✓[/green] Checkpoint log reset")
        else:
            console.print("[yellow]No active checkpoint log[/yellow]")
        return

    kind = CheckpointKind.parse(kind)
    agent = None
    if kind is CheckpointKind.AI_AGENT and tool:
        agent = AgentRef(tool=tool, id=agent_id or "", model=model or "unknown")
    author = resolve_author_identity(log.repo_path)

    try:
        try:
            cp = log.record(kind, author, agent=agent, paths=list(paths) or None)
        except LogSealedError:
            # A commit landed while we were snapshotting; HEAD has moved on
            cp = log.record(kind, author, agent=agent, paths=list(paths) or None)
    except NoChangesError as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        return
    except AiTrackException as e:
        _fail(format_error(e.to_error()))

    stats = cp.line_stats
    console.print(
        f"[green]✓[/green] Checkpoint #{cp.seq} ({cp.author_id}): "
        f"{len(cp.entries)} files, +{stats.additions} -{stats.deletions}"
    )


@main.command("pre-commit")
def pre_commit_cmd():
    """Run the pre-commit step (for the git hook)."""
    cp = pre_commit()
    if cp is not None:
        logger.info(f"Human checkpoint #{cp.seq} recorded")


@main.command("post-commit")
def post_commit_cmd():
    """Run the post-commit step (for the git hook)."""
    try:
        summary = post_commit()
    except AiTrackException as e:
        _fail(format_error(e.to_error()))

    for error in summary.errors:
        err_console.print(f"[yellow]aitrack: {error}[/yellow]")
    if summary.unattributed_files:
        err_console.print(
            f"[dim]aitrack: {len(summary.unattributed_files)} files recorded as Unattributed[/dim]"
        )


@main.command("log")
def log_cmd():
    """Show the active checkpoint log."""
    log = _open_log()
    base = log.current_base()
    try:
        checkpoints = log.read_all(base)
    except AiTrackException as e:
        _fail(format_error(e.to_error()))

    if not checkpoints:
        console.print(f"[yellow]No checkpoints since {base[:12]}[/yellow]")
        return

    table = Table(title=f"Checkpoints since {base[:12]}")
    table.add_column("SEQ", justify="right")
    table.add_column("AUTHOR")
    table.add_column("TIME")
    table.add_column("FILES", justify="right")
    table.add_column("+/-", justify="right")
    table.add_column("BY")

    for cp in checkpoints:
        table.add_row(
            str(cp.seq),
            _author_style(cp.author_id),
            _format_ts(cp.timestamp),
            str(len(cp.entries)),
            f"+{cp.line_stats.additions} -{cp.line_stats.deletions}",
            cp.author_identity,
        )
    console.print(table)


# =============================================================================
# Queries
# =============================================================================


@main.command()
@click.argument("file")
@click.option("--ref", default="HEAD", help="Revision to blame")
@click.option("--working", is_flag=True, help="Blame the working copy instead of --ref")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def blame(file, ref, working, as_json):
    """Show who authored each line of FILE."""
    engine = _engine()
    try:
        lines = engine.blame(file, None if working else ref)
    except AiTrackException as e:
        _fail(format_error(e.to_error()))

    if as_json:
        print(json.dumps([line.to_dict() for line in lines], indent=2))
        return

    table = Table(box=None, show_header=True)
    table.add_column("LINE", justify="right", style="dim")
    table.add_column("AUTHOR")
    table.add_column("COMMIT", style="dim")
    table.add_column("CODE", overflow="fold")

    for line in lines:
        table.add_row(
            str(line.line_number),
            _author_style(line.author_id),
            line.commit[:8] if line.commit else "-",
            line.content,
        )
    console.print(table)


def _print_stats(stats, title):
    table = Table(title=title)
    table.add_column("AUTHOR")
    table.add_column("LINES", justify="right")
    table.add_column("SHARE", justify="right")

    total = stats.total_lines
    for author, count in sorted(stats.lines_by_author.items(), key=lambda kv: -kv[1]):
        share = f"{count / total:.0%}" if total else "-"
        table.add_row(_author_style(author), str(count), share)
    console.print(table)
    console.print(
        f"Human {stats.human_lines} | AI {stats.ai_lines} | "
        f"Unattributed {stats.unattributed_lines} | {len(stats.files_touched)} files"
    )


@main.command()
@click.argument("commit", default="HEAD")
@click.option("--ignore", multiple=True, help="Glob of files to leave out")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def show(commit, ignore, as_json):
    """Show authorship totals recorded for COMMIT."""
    engine = _engine()
    sha = git.resolve_commit(commit, engine.repo_path)
    if sha is None:
        _fail(f"Unknown commit: {commit}")

    stats = engine.show(sha, list(ignore))
    if as_json:
        print(json.dumps(stats.to_dict(), indent=2))
        return
    if not stats.has_ledger:
        console.print(f"[yellow]No attestation log for {sha[:12]}[/yellow]")
        return
    _print_stats(stats, f"Commit {sha[:12]}")


@main.command()
@click.argument("revision_range", required=False)
@click.option("--ignore", multiple=True, help="Glob of files to leave out")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def stats(revision_range, ignore, as_json):
    """Aggregate authorship over a range (a..b), a commit, or HEAD."""
    engine = _engine()
    try:
        totals = engine.stats(revision_range, list(ignore))
    except ValueError as e:
        _fail(str(e))

    if as_json:
        print(json.dumps(totals.to_dict(), indent=2))
        return

    _print_stats(totals, revision_range or "HEAD")
    if totals.missing_ledger:
        console.print(f"[dim]{len(totals.missing_ledger)} commits have no attestation log[/dim]")


@main.command()
@click.option("--ignore", multiple=True, help="Glob of files to leave out")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def status(ignore, as_json):
    """Authorship of uncommitted work."""
    engine = _engine()
    try:
        working = engine.working_stats(list(ignore))
    except AiTrackException as e:
        _fail(format_error(e.to_error()))

    if as_json:
        print(json.dumps(working.to_dict(), indent=2))
        return

    if not working.lines_by_author:
        console.print("[yellow]No uncommitted additions[/yellow]")
        return

    table = Table(title=f"Uncommitted work on {working.base_commit[:12]}")
    table.add_column("AUTHOR")
    table.add_column("LINES", justify="right")
    for author, count in sorted(working.lines_by_author.items(), key=lambda kv: -kv[1]):
        table.add_row(_author_style(author), str(count))
    console.print(table)
    console.print(
        f"{working.checkpoint_count} checkpoints, {len(working.files_touched)} files changed"
    )


# =============================================================================
# Configuration
# =============================================================================


def _config_dir(repo: bool):
    if not repo:
        return config_module.USER_DIR
    git_dir = git.get_git_dir()
    if git_dir is None:
        _fail("Not inside a git repository")
    return get_track_dir(git_dir)


def _coerce(key: str, value: str):
    """Convert a command-line string to the type of a TrackConfig field."""
    default = getattr(TrackConfig(), key)
    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Invalid boolean value: {value}")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


@main.group()
def config():
    """Manage configuration.

    Values cascade from the environment, then the repository config
    (<git-dir>/ai-track/config.yaml), then the user config
    (~/.aitrack/config.yaml).
    """
    pass


@config.command("list")
def config_list():
    """Show the effective configuration."""
    effective = get_track_config(git.get_git_dir())
    defaults = TrackConfig()

    console.print("[bold]aitrack configuration[/bold]")
    console.print()
    for key, value in effective.to_dict().items():
        default = getattr(defaults, key)
        if value != default:
            console.print(f"  {key}: [cyan]{value}[/cyan] [dim](default: {default})[/dim]")
        else:
            console.print(f"  {key}: {value}")

    console.print()
    console.print("[dim]aitrack config set KEY VALUE          Set a user-level value[/dim]")
    console.print("[dim]aitrack config set KEY VALUE --repo   Set a repository-level value[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--repo", is_flag=True, help="Set in the repository config")
def config_set(key: str, value: str, repo: bool):
    """Set a configuration value.

    Examples:
        aitrack config set post_commit_policy unattributed
        aitrack config set ignore_patterns "*.lock,vendor/*" --repo
    """
    key = key.replace("-", "_")
    if key not in TrackConfig().to_dict():
        _fail(f"Unknown config key: {key}")

    try:
        typed_value = _coerce(key, value)
    except ValueError:
        _fail(f"Invalid value for {key}: {value}")
    if key == "post_commit_policy" and typed_value not in POST_COMMIT_POLICIES:
        _fail(f"post_commit_policy must be one of: {', '.join(POST_COMMIT_POLICIES)}")

    config_dir = _config_dir(repo)
    values = TrackConfig.load(config_dir).to_dict()
    values[key] = typed_value
    try:
        TrackConfig(**values).save(config_dir)
    except OSError as e:
        _fail(str(e))

    location = "repository" if repo else "user"
    console.print(f"[green]✓[/green] Set {key} = {typed_value} ({location} config)")


@config.command("reset")
@click.option("--repo", is_flag=True, help="Reset the repository config")
def config_reset(repo: bool):
    """Reset configuration to defaults."""
    try:
        TrackConfig().save(_config_dir(repo))
    except OSError as e:
        _fail(str(e))

    location = "repository" if repo else "user"
    console.print(f"[green]✓[/green] Reset {location} config to defaults")


if __name__ == "__main__":
    main()
