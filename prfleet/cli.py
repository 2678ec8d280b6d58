"""CLI entry point: prfleet.

Subcommands:
    prfleet scan --type dev-staging                 # Stream what each repository would release
    prfleet batch --all --type staging-main         # Release PRs for the whole fleet
    prfleet batch frontend/web backend/api          # ... or for named repositories
    prfleet single                                  # Release PR for the current repository
    prfleet open-prs                                # List open release PRs
    prfleet merge --all                             # Merge open release PRs
    prfleet pull --branch staging                   # Check out and fast-forward a branch everywhere
    prfleet actions --filter deploy                 # Recent GitHub Actions runs across the fleet

Global options --dry-run (synthetic git and forge, nothing is written),
--config (TOML settings file) and -v/--verbose.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import click

from prfleet.core.config import Settings, load_settings
from prfleet.core.logging import setup_logging
from prfleet.dryrun import DryRunActionsClient, DryRunGitClient, DryRunPullRequestClient
from prfleet.engines.actions import ActionsMonitor, matches_filter
from prfleet.engines.batch import BatchPipeline, BatchState
from prfleet.engines.merge import MergeRunner
from prfleet.engines.pull import PULL_BRANCHES, PullRunner, target_branch
from prfleet.engines.scanner import ScanSession
from prfleet.engines.single import SingleRepoRunner
from prfleet.exceptions import PrFleetError, TransportError
from prfleet.forge import (
    ActionsBackend,
    ActionsClient,
    GitHubClient,
    PullRequestBackend,
    PullRequestClient,
)
from prfleet.git import GitClient, current_repository, find_repositories
from prfleet.models import (
    ActionsEntry,
    BatchSummary,
    PrType,
    PullResult,
    PullStatus,
    RepositoryRef,
    ScanEvent,
)
from prfleet.progress import ProgressReporter, StepProgress

_TYPE_CHOICES = [t.value for t in PrType]


@dataclass
class AppContext:
    settings: Settings
    dry_run: bool = False
    delay_scale: float = 1.0


@contextlib.asynccontextmanager
async def _collaborators(app: AppContext) -> AsyncIterator[tuple[GitClient, PullRequestBackend]]:
    if app.dry_run:
        yield DryRunGitClient(app.delay_scale), DryRunPullRequestClient(app.delay_scale)
        return
    git = GitClient()
    github_cfg = app.settings.github
    async with GitHubClient(github_cfg.token, base_url=github_cfg.api_url) as github:
        yield git, PullRequestClient(github, git)


@contextlib.asynccontextmanager
async def _actions_backend(app: AppContext) -> AsyncIterator[tuple[GitClient, ActionsBackend]]:
    if app.dry_run:
        yield DryRunGitClient(app.delay_scale), DryRunActionsClient(app.delay_scale)
        return
    git = GitClient()
    github_cfg = app.settings.github
    async with GitHubClient(github_cfg.token, base_url=github_cfg.api_url) as github:
        yield git, ActionsClient(github, git)


async def _discover(app: AppContext, git: GitClient) -> list[RepositoryRef]:
    paths = app.settings.paths
    repos = await find_repositories(git, paths.root, paths.frontend_glob, paths.backend_glob)
    if not repos:
        raise PrFleetError(f"No repositories found under {paths.root}")
    return repos


async def _confirm(message: str) -> bool:
    """Prompt in a worker thread so scan teardown keeps running meanwhile."""
    return await asyncio.to_thread(click.confirm, message, default=True)


def _run(coro: Coroutine[Any, Any, int]) -> None:
    """Run *coro*; PrFleetError becomes a one-line message and exit code 1."""
    try:
        code = asyncio.run(coro)
    except PrFleetError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    if code:
        sys.exit(code)


def _echo_step(p: StepProgress) -> None:
    if p.status == "running":
        click.echo(f"  {p.repository}: {p.step}")


def _reporter() -> ProgressReporter:
    reporter = ProgressReporter()
    reporter.callbacks.append(_echo_step)
    return reporter


def _scan_line(repo: RepositoryRef, event: ScanEvent) -> str:
    if event.diff.is_empty:
        suffix = f" ({event.error})" if event.error else ""
        return f"  [-] {repo.display_name}: no commits{suffix}"
    tickets = f"  {', '.join(event.diff.tickets)}" if event.diff.tickets else ""
    return f"  [+] {repo.display_name}: {len(event.diff)} commits{tickets}"


def _print_summary(summary: BatchSummary) -> None:
    click.echo(
        f"\nSummary: {summary.succeeded} succeeded, {summary.skipped} skipped, "
        f"{summary.failed} failed"
    )
    for outcome in summary.outcomes:
        detail = outcome.pr_url or outcome.reason
        click.echo(f"  [{outcome.label}] {outcome.repository.display_name}: {detail}")


# ── command group ──


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Settings file (default: $PRFLEET_CONFIG or ~/.config/prfleet.toml)",
)
@click.option("--dry-run", is_flag=True, help="Simulate git and GitHub; nothing is written")
@click.option("--dry-run-delay", type=float, default=1.0, hidden=True)
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    dry_run: bool,
    dry_run_delay: float,
    verbose: bool,
) -> None:
    """prfleet: release pull requests across a fleet of repositories."""
    setup_logging("DEBUG" if verbose else None)
    try:
        settings = load_settings(config_path)
    except PrFleetError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    ctx.obj = AppContext(settings=settings, dry_run=dry_run, delay_scale=dry_run_delay)


def _type_option(**kwargs: Any):
    return click.option(
        "--type",
        "pr_type",
        type=click.Choice(_TYPE_CHOICES),
        help="Branch pair: dev-staging (dev → staging) or staging-main (staging → main)",
        **kwargs,
    )


# ── scan ──


@main.command("scan")
@_type_option(default=PrType.DEV_TO_STAGING.value, show_default=True)
@click.pass_obj
def scan(app: AppContext, pr_type: str) -> None:
    """Show, per repository, the commits a release PR would carry."""
    _run(_scan(app, PrType.from_slug(pr_type)))


async def _scan(app: AppContext, pr_type: PrType) -> int:
    async with _collaborators(app) as (git, _pulls):
        repos = await _discover(app, git)
        options = app.settings.scan
        session = ScanSession(
            repos,
            pr_type,
            git,
            app.settings.tickets.regex,
            max_concurrency=options.max_concurrency,
            surface_errors=options.surface_errors,
        )
        click.echo(f"Scanning {len(repos)} repositories ({pr_type.display()})...")
        session.start()
        try:
            async for event in session.stream():
                session.apply(event)
                click.echo(_scan_line(repos[event.index], event))
        finally:
            await session.aclose(options.cancel_grace_seconds)
    return 0


# ── batch ──


@main.command("batch")
@_type_option(default=PrType.DEV_TO_STAGING.value, show_default=True)
@click.argument("names", nargs=-1)
@click.option("--all", "select_all", is_flag=True, help="Select every repository")
@click.option("--title", default="", help="PR title (default: '<head> → <base>')")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def batch(
    app: AppContext,
    pr_type: str,
    names: tuple[str, ...],
    select_all: bool,
    title: str,
    yes: bool,
) -> None:
    """Create or update release PRs for the selected repositories."""
    if not names and not select_all:
        raise click.UsageError("Name one or more repositories, or pass --all.")
    _run(_batch(app, PrType.from_slug(pr_type), names, select_all, title, yes))


async def _batch(
    app: AppContext,
    pr_type: PrType,
    names: tuple[str, ...],
    select_all: bool,
    title: str,
    yes: bool,
) -> int:
    async with _collaborators(app) as (git, pulls):
        repos = await _discover(app, git)
        pipeline = BatchPipeline(
            repos,
            pr_type,
            git,
            pulls,
            ticket_pattern=app.settings.tickets.regex,
            linear_org=app.settings.tickets.linear_org,
            scan_options=app.settings.scan,
            reporter=_reporter(),
        )
        await pipeline.open()
        try:
            if select_all:
                pipeline.selection.select_all()
            else:
                try:
                    pipeline.select_names(names)
                except ValueError as exc:
                    raise click.UsageError(str(exc)) from exc
            if not pipeline.commit_selection():
                click.echo("No repositories selected.")
                return 0

            click.echo(f"Scanning {len(pipeline.selection)} repositories ({pr_type.display()})...")
            await pipeline.wait_for_scans()
            if pipeline.state is BatchState.ERROR:
                raise TransportError(pipeline.error or "scan failed")

            existing = pipeline.existing
            if existing is None or pipeline.scan is None:
                raise RuntimeError(f"unexpected pipeline state {pipeline.state.value}")
            for i in pipeline.selection:
                repo = repos[i]
                diff = pipeline.scan.diff(i)
                if diff is None or diff.is_empty:
                    click.echo(f"  [-] {repo.display_name}: no commits")
                    continue
                pr = existing.existing_prs.get(i)
                note = f" (updates #{pr.number})" if pr else ""
                click.echo(f"  [+] {repo.display_name}: {len(diff)} commits{note}")
            if existing.tickets:
                click.echo(f"Tickets: {', '.join(existing.tickets)}")

            if not existing.repos_with_commits:
                click.echo("Nothing to release: no selected repository has commits.")
                return 0
            count = len(existing.repos_with_commits)
            if not yes and not await _confirm(f"Create or update {count} PR(s)?"):
                click.echo("Aborted.")
                return 0

            pipeline.confirm(title)
            summary = await pipeline.process_all()
        finally:
            await pipeline.aclose()

    _print_summary(summary)
    return 1 if summary.failed else 0


# ── single ──


@main.command("single")
@_type_option(default=PrType.DEV_TO_STAGING.value, show_default=True)
@click.option("--title", default="", help="PR title (default: '<head> → <base>')")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.option(
    "--path",
    "repo_path",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Repository directory (default: current directory)",
)
@click.pass_obj
def single(
    app: AppContext, pr_type: str, title: str, yes: bool, repo_path: str | None
) -> None:
    """Create or update the release PR of the current repository."""
    _run(_single(app, PrType.from_slug(pr_type), title, yes, repo_path))


async def _single(
    app: AppContext, pr_type: PrType, title: str, yes: bool, repo_path: str | None
) -> int:
    async with _collaborators(app) as (git, pulls):
        try:
            repo = await current_repository(git, repo_path)
        except FileNotFoundError as exc:
            click.echo(f"Error: {exc}", err=True)
            return 1
        runner = SingleRepoRunner(
            repo,
            pr_type,
            git,
            pulls,
            ticket_pattern=app.settings.tickets.regex,
            linear_org=app.settings.tickets.linear_org,
            reporter=_reporter(),
        )
        preview = await runner.preview()
        click.echo(f"{repo.display_name}: {pr_type.display(repo.main_branch)}")
        if preview.is_empty:
            click.echo("No commits to merge.")
            return 0
        for commit in preview.diff.commits:
            click.echo(f"  {commit.short_hash} {commit.summary}")
        if preview.diff.tickets:
            click.echo(f"Tickets: {', '.join(preview.diff.tickets)}")
        if preview.existing is not None:
            click.echo(f"Existing PR: {preview.existing.url}")

        action = "Update" if preview.existing is not None else "Create"
        if not yes and not await _confirm(f"{action} PR?"):
            click.echo("Aborted.")
            return 0
        pr, updated = await runner.submit(title, preview)
    click.echo(f"{'Updated' if updated else 'Created'} PR: {pr.url}")
    return 0


# ── open-prs / merge ──


@main.command("open-prs")
@click.pass_obj
def open_prs(app: AppContext) -> None:
    """List open release PRs across the fleet."""
    _run(_open_prs(app))


async def _open_prs(app: AppContext) -> int:
    async with _collaborators(app) as (git, pulls):
        repos = await _discover(app, git)
        entries = await MergeRunner(repos, pulls).list_open()
    if not entries:
        click.echo("No open release PRs.")
        return 0
    for entry in entries:
        click.echo(
            f"  {entry.repository.display_name}  #{entry.number}  "
            f"{entry.pr_type.display(entry.repository.main_branch)}  {entry.url}"
        )
    return 0


@main.command("merge")
@click.argument("names", nargs=-1)
@click.option("--all", "select_all", is_flag=True, help="Merge every open release PR")
@_type_option(default=None, show_default=False)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def merge(
    app: AppContext,
    names: tuple[str, ...],
    select_all: bool,
    pr_type: str | None,
    yes: bool,
) -> None:
    """Merge open release PRs (merge commit; branches are kept)."""
    if not names and not select_all:
        raise click.UsageError("Name one or more repositories, or pass --all.")
    wanted_type = PrType.from_slug(pr_type) if pr_type else None
    _run(_merge(app, set(names), wanted_type, yes))


async def _merge(
    app: AppContext, names: set[str], pr_type: PrType | None, yes: bool
) -> int:
    async with _collaborators(app) as (git, pulls):
        repos = await _discover(app, git)
        runner = MergeRunner(repos, pulls, reporter=_reporter())
        entries = [
            e
            for e in await runner.list_open()
            if (not names or e.repository.display_name in names)
            and (pr_type is None or e.pr_type is pr_type)
        ]
        if not entries:
            click.echo("No matching open release PRs.")
            return 0
        for entry in entries:
            click.echo(f"  {entry.repository.display_name}  #{entry.number}  {entry.title}")
        if not yes and not await _confirm(f"Merge {len(entries)} PR(s)?"):
            click.echo("Aborted.")
            return 0
        results = await runner.merge(entries)

    failed = [r for r in results if not r.success]
    click.echo(f"\nMerged {len(results) - len(failed)} of {len(results)} PR(s)")
    for r in failed:
        click.echo(f"  [failed] {r.repository.display_name} #{r.number}: {r.error}")
    return 1 if failed else 0


# ── pull ──


def _pull_line(result: PullResult, branch: str) -> str:
    name = result.repository.display_name
    match result.status:
        case PullStatus.UPDATED:
            return f"  [updated] {name}: {result.commit_count} commits"
        case PullStatus.UP_TO_DATE:
            return f"  [up to date] {name}"
        case PullStatus.SKIPPED_NO_BRANCH:
            return f"  [skipped] {name}: no {target_branch(branch, result.repository)} branch"
        case PullStatus.SKIPPED_DIRTY:
            return f"  [skipped] {name}: uncommitted changes"
        case PullStatus.FAILED:
            return f"  [failed] {name}: {result.error}"


@main.command("pull")
@click.argument("names", nargs=-1)
@click.option(
    "--branch",
    type=click.Choice(PULL_BRANCHES),
    default="dev",
    show_default=True,
    help="Branch to check out and pull ('main' follows each repository's main branch)",
)
@click.pass_obj
def pull(app: AppContext, names: tuple[str, ...], branch: str) -> None:
    """Check out a branch and fast-forward it in every repository (or the named ones)."""
    _run(_pull(app, names, branch))


async def _pull(app: AppContext, names: tuple[str, ...], branch: str) -> int:
    async with _collaborators(app) as (git, _pulls):
        repos = await _discover(app, git)
        if names:
            known = {repo.display_name for repo in repos}
            unknown = [name for name in names if name not in known]
            if unknown:
                raise click.UsageError("Unknown repositories: " + ", ".join(unknown))
            repos = [repo for repo in repos if repo.display_name in names]

        click.echo(f"Pulling {branch} across {len(repos)} repositories...")
        runner = PullRunner(repos, branch, git)
        results = await runner.run(lambda r: click.echo(_pull_line(r, branch)))

    counts = {status: 0 for status in PullStatus}
    for r in results:
        counts[r.status] += 1
    skipped = counts[PullStatus.SKIPPED_NO_BRANCH] + counts[PullStatus.SKIPPED_DIRTY]
    click.echo(
        f"\nPulled {branch}: {counts[PullStatus.UPDATED]} updated, "
        f"{counts[PullStatus.UP_TO_DATE]} up to date, {skipped} skipped, "
        f"{counts[PullStatus.FAILED]} failed"
    )
    return 1 if counts[PullStatus.FAILED] else 0


# ── actions ──


def _run_icon(entry: ActionsEntry) -> str:
    run = entry.run
    if run.is_active:
        return "[*]"
    if run.conclusion == "success":
        return "[+]"
    if run.conclusion in ("failure", "timed_out", "startup_failure"):
        return "[x]"
    return "[-]"


@main.command("actions")
@click.option(
    "--filter",
    "text",
    default="",
    help="Only runs whose repository, workflow, branch or title contains TEXT",
)
@click.option(
    "--hours", type=click.IntRange(min=1), default=48, show_default=True, help="Look-back window"
)
@click.option(
    "--limit",
    type=click.IntRange(1, 100),
    default=10,
    show_default=True,
    help="Runs fetched per repository",
)
@click.pass_obj
def actions(app: AppContext, text: str, hours: int, limit: int) -> None:
    """Show active runs and the latest finished run per workflow across the fleet."""
    _run(_actions(app, text, hours, limit))


async def _actions(app: AppContext, text: str, hours: int, limit: int) -> int:
    async with _actions_backend(app) as (git, backend):
        repos = await _discover(app, git)
        monitor = ActionsMonitor(repos, backend, window=timedelta(hours=hours), limit=limit)
        entries = [e for e in await monitor.fetch() if matches_filter(e, text)]

    if not entries:
        click.echo("No recent workflow runs.")
        return 0
    click.echo(f"{len(entries)} run(s) in the last {hours}h:")
    for entry in entries:
        run = entry.run
        state = run.conclusion if run.status == "completed" else run.status
        click.echo(
            f"  {_run_icon(entry)} {entry.repository.display_name}  {run.workflow_name}  "
            f"{run.head_branch}  {run.display_title}  ({state})  {run.url}"
        )
    return 0
