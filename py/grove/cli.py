"""grove command-line interface.

Thin click front end: each command builds one variant from
``grove.commands``, dispatches it, and renders the typed result with rich.
Exit status is the result's exit code (0 ok, 1 conflict, 2 fatal).
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import click
from rich.console import Console
from rich.markup import escape

from grove import __version__
from grove.commands import (
    AddCommand, BranchCommand, CheckoutCommand, CloneCommand, CommandResult,
    CommitCommand, DiffCommand, InitCommand, LogCommand, MergeCommand,
    PullCommand, PushCommand, RemoteCommand, StashCommand, StatusCommand,
    dispatch,
)
from grove.errors import MergeConflict
from grove.types import FileStatus


# ============================================================
# Rendering
# ============================================================

def _format_date(timestamp: int, tz_offset: int) -> str:
    tz = timezone(timedelta(minutes=tz_offset))
    return datetime.fromtimestamp(timestamp, tz).strftime("%a %b %d %H:%M:%S %Y %z")


def _render_status(console: Console, value: Any) -> None:
    head, entries, merge_head = value
    if head.branch is None:
        console.print(f"HEAD detached at {head.commit[:10]}")
    else:
        console.print(f"On branch {escape(head.branch)}")
    if head.commit is None:
        console.print("\nNo commits yet")
    if merge_head:
        console.print("\nYou have unmerged paths.\n  (fix conflicts and run \"grove commit\")")

    sections = [
        ("Unmerged paths:", "red",
         [e for e in entries if e.staged == FileStatus.CONFLICTED], "staged"),
        ("Changes to be committed:", "green",
         [e for e in entries if e.staged not in (FileStatus.UNMODIFIED, FileStatus.UNTRACKED,
                                                 FileStatus.CONFLICTED)], "staged"),
        ("Changes not staged for commit:", "red",
         [e for e in entries if e.unstaged in (FileStatus.MODIFIED, FileStatus.DELETED)
          and e.staged != FileStatus.CONFLICTED], "unstaged"),
    ]
    for title, color, rows, side in sections:
        if rows:
            console.print(f"\n{title}")
            for e in rows:
                label = getattr(e, side).value
                console.print(f"  [{color}]{label + ':':<12}{escape(e.path)}[/{color}]")
    untracked = [e for e in entries if e.staged == FileStatus.UNTRACKED]
    if untracked:
        console.print("\nUntracked files:")
        for e in untracked:
            console.print(f"  [red]{escape(e.path)}[/red]")
    if all(e.clean for e in entries):
        console.print("\nnothing to commit, working tree clean")


def _render_log(console: Console, commits: Any) -> None:
    for i, commit in enumerate(commits):
        if i:
            console.print()
        console.print(f"[yellow]commit {commit.obj_hash}[/yellow]")
        if commit.is_merge:
            console.print("Merge: " + " ".join(p[:7] for p in commit.parents))
        console.print(f"Author: {escape(commit.author)}")
        console.print(f"Date:   {_format_date(commit.timestamp, commit.tz_offset)}")
        console.print()
        for line in commit.message.rstrip("\n").split("\n"):
            console.print(f"    {escape(line)}")


def _render_diff(console: Console, diffs: Any) -> None:
    for d in diffs:
        console.print(f"[bold]diff --grove a/{escape(d.path)} b/{escape(d.path)}[/bold]")
        for line in d.patch.splitlines():
            if line.startswith(("+++", "---")):
                console.print(f"[bold]{escape(line)}[/bold]")
            elif line.startswith("+"):
                console.print(f"[green]{escape(line)}[/green]")
            elif line.startswith("-"):
                console.print(f"[red]{escape(line)}[/red]")
            elif line.startswith("@@"):
                console.print(f"[cyan]{escape(line)}[/cyan]")
            else:
                console.print(escape(line))


def _render_conflicts(console: Console, err: MergeConflict) -> None:
    for c in err.conflicts:
        console.print(f"CONFLICT ({c.kind}): Merge conflict in {escape(c.path)}")
    if err.action == "merge":
        console.print("Automatic merge failed; fix conflicts and then commit the result.")
    else:
        console.print("The stash entry is kept in case you need it again.")


def _run(ctx: click.Context, command: Any) -> CommandResult:
    """Dispatch and print messages; exits the process on failure."""
    console = ctx.obj["console"]
    result = dispatch(command, ctx.obj["cwd"])
    for message in result.messages:
        console.print(escape(message))
    if isinstance(result.error, MergeConflict):
        _render_conflicts(console, result.error)
    elif result.error is not None:
        ctx.obj["err_console"].print(f"fatal: {escape(str(result.error))}")
    if not result.ok:
        ctx.exit(result.exit_code)
    return result


# ============================================================
# Commands
# ============================================================

@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("-C", "path", type=click.Path(), default=None,
              help="Run as if grove was started in PATH")
@click.version_option(version=__version__, prog_name="grove")
@click.pass_context
def cli(ctx, verbose: bool, path: Optional[str]):
    """grove: a small local version-control system.

    \b
    GETTING STARTED:
      grove init
      grove add README.md
      grove commit -m "first commit"
      grove log
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["cwd"] = os.path.abspath(path or os.getcwd())
    ctx.obj["console"] = Console(highlight=False, soft_wrap=True)
    ctx.obj["err_console"] = Console(stderr=True, highlight=False, soft_wrap=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


@cli.command()
@click.argument("path", default=".")
@click.option("--initial-branch", "-b", default="main", help="Name of the first branch")
@click.pass_context
def init(ctx, path: str, initial_branch: str):
    """Create an empty repository."""
    _run(ctx, InitCommand(path=path, branch=initial_branch))


@cli.command()
@click.argument("source")
@click.argument("dest", required=False)
@click.pass_context
def clone(ctx, source: str, dest: Optional[str]):
    """Copy a repository and track it as 'origin'."""
    if dest is None:
        dest = os.path.basename(os.path.normpath(source))
    _run(ctx, CloneCommand(source=source, dest=dest))


@cli.command()
@click.pass_context
def status(ctx):
    """Show staged, unstaged and untracked paths."""
    _render_status(ctx.obj["console"], _run(ctx, StatusCommand()).value)


@cli.command()
@click.argument("paths", nargs=-1, required=True)
@click.pass_context
def add(ctx, paths):
    """Stage files or directories."""
    _run(ctx, AddCommand(paths=tuple(paths)))


@cli.command()
@click.option("--message", "-m", default=None, help="Commit message")
@click.option("--author", default=None, help="Override the author, 'Name <email>'")
@click.pass_context
def commit(ctx, message: Optional[str], author: Optional[str]):
    """Record the index as a new commit."""
    _run(ctx, CommitCommand(message=message, author=author))


@cli.command()
@click.option("--max-count", "-n", type=int, default=None, help="Limit the number of commits")
@click.argument("start", default="HEAD")
@click.pass_context
def log(ctx, max_count: Optional[int], start: str):
    """Show commit history, newest first."""
    _render_log(ctx.obj["console"],
                _run(ctx, LogCommand(max_count=max_count, start=start)).value)


@cli.command()
@click.option("--staged", "--cached", "staged", is_flag=True,
              help="Compare the index with HEAD instead of the working tree")
@click.argument("paths", nargs=-1)
@click.pass_context
def diff(ctx, staged: bool, paths):
    """Show changes as unified diffs."""
    _render_diff(ctx.obj["console"],
                 _run(ctx, DiffCommand(paths=tuple(paths), staged=staged)).value)


@cli.command()
@click.option("--delete", "-d", is_flag=True, help="Delete the branch")
@click.argument("name", required=False)
@click.argument("start", required=False)
@click.pass_context
def branch(ctx, delete: bool, name: Optional[str], start: Optional[str]):
    """List, create or delete branches."""
    if delete and not name:
        raise click.UsageError("branch name required")
    result = _run(ctx, BranchCommand(name=name, delete=delete, start=start))
    if name is None:
        current, names = result.value
        for b in names:
            if b == current:
                ctx.obj["console"].print(f"* [green]{escape(b)}[/green]")
            else:
                ctx.obj["console"].print(f"  {escape(b)}")


@cli.command()
@click.option("-b", "create", is_flag=True, help="Create the branch before switching")
@click.argument("target")
@click.pass_context
def checkout(ctx, create: bool, target: str):
    """Switch branches or detach HEAD at a commit."""
    _run(ctx, CheckoutCommand(target=target, create=create))


@cli.command()
@click.option("--abort", is_flag=True, help="Abandon an in-progress merge")
@click.option("--message", "-m", default=None, help="Merge commit message")
@click.argument("source", required=False)
@click.pass_context
def merge(ctx, abort: bool, message: Optional[str], source: Optional[str]):
    """Join another branch into the current one."""
    if not abort and not source:
        raise click.UsageError("merge source required")
    _run(ctx, MergeCommand(source=source, abort=abort, message=message))


@cli.group(invoke_without_command=True)
@click.option("--verbose", "-v", "show_urls", is_flag=True, help="Show remote urls")
@click.pass_context
def remote(ctx, show_urls: bool):
    """Manage configured remotes."""
    if ctx.invoked_subcommand is not None:
        return
    remotes = _run(ctx, RemoteCommand(action="list")).value
    for name, url in sorted(remotes.items()):
        ctx.obj["console"].print(f"{escape(name)}\t{escape(url)}" if show_urls else escape(name))


@remote.command("add")
@click.argument("name")
@click.argument("url")
@click.pass_context
def remote_add(ctx, name: str, url: str):
    """Add a remote."""
    _run(ctx, RemoteCommand(action="add", name=name, url=url))


@remote.command("remove")
@click.argument("name")
@click.pass_context
def remote_remove(ctx, name: str):
    """Remove a remote and its tracking refs."""
    _run(ctx, RemoteCommand(action="remove", name=name))


@remote.command("set-url")
@click.argument("name")
@click.argument("url")
@click.pass_context
def remote_set_url(ctx, name: str, url: str):
    """Change a remote's location."""
    _run(ctx, RemoteCommand(action="set-url", name=name, url=url))


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Allow non-fast-forward updates")
@click.argument("remote_name", default="origin")
@click.argument("branch_name", required=False)
@click.pass_context
def push(ctx, force: bool, remote_name: str, branch_name: Optional[str]):
    """Publish a branch to a remote."""
    _run(ctx, PushCommand(remote=remote_name, branch=branch_name, force=force))


@cli.command()
@click.option("--ff-only", is_flag=True, help="Refuse to create a merge commit")
@click.argument("remote_name", default="origin")
@click.argument("branch_name", required=False)
@click.pass_context
def pull(ctx, ff_only: bool, remote_name: str, branch_name: Optional[str]):
    """Fetch a branch from a remote and merge it."""
    _run(ctx, PullCommand(remote=remote_name, branch=branch_name, ff_only=ff_only))


@cli.group(invoke_without_command=True)
@click.pass_context
def stash(ctx):
    """Shelve local changes (default action: push)."""
    if ctx.invoked_subcommand is None:
        _run(ctx, StashCommand(action="push"))


@stash.command("push")
@click.option("--message", "-m", default=None, help="Describe the stash entry")
@click.pass_context
def stash_push(ctx, message: Optional[str]):
    """Save local changes and reset to HEAD."""
    _run(ctx, StashCommand(action="push", message=message))


@stash.command("pop")
@click.argument("position", type=int, default=0)
@click.pass_context
def stash_pop(ctx, position: int):
    """Apply an entry and drop it."""
    _run(ctx, StashCommand(action="pop", position=position))


@stash.command("apply")
@click.argument("position", type=int, default=0)
@click.pass_context
def stash_apply(ctx, position: int):
    """Apply an entry and keep it."""
    _run(ctx, StashCommand(action="apply", position=position))


@stash.command("list")
@click.pass_context
def stash_list(ctx):
    """List stash entries."""
    for i, entry in enumerate(_run(ctx, StashCommand(action="list")).value):
        ctx.obj["console"].print(f"stash@{{{i}}}: {escape(entry.message)}")


@stash.command("show")
@click.argument("position", type=int, default=0)
@click.pass_context
def stash_show(ctx, position: int):
    """Summarize the paths an entry changes."""
    _entry, changes = _run(ctx, StashCommand(action="show", position=position)).value
    for path, change in changes:
        ctx.obj["console"].print(f" {change} {escape(path)}")


@stash.command("drop")
@click.argument("position", type=int, default=0)
@click.pass_context
def stash_drop(ctx, position: int):
    """Discard an entry."""
    _run(ctx, StashCommand(action="drop", position=position))


@stash.command("clear")
@click.pass_context
def stash_clear(ctx):
    """Discard all entries."""
    _run(ctx, StashCommand(action="clear"))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
