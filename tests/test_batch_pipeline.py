"""Tests for the batch pipeline state machine."""

from __future__ import annotations

import asyncio

import pytest

from prfleet.core.config import ScanConfig
from prfleet.dryrun import DryRunGitClient, DryRunPullRequestClient
from prfleet.engines.batch import BatchPipeline, BatchState, SelectionSet
from prfleet.exceptions import NotAuthenticatedError, TransportError
from prfleet.models import (
    NO_COMMITS,
    NOT_SELECTED,
    Created,
    Failed,
    PrType,
    PullRequestRef,
    RepositoryRef,
    Skipped,
    Updated,
)
from prfleet.progress import ProgressReporter


def _pipeline(repos, git, pulls, **kwargs) -> BatchPipeline:
    kwargs.setdefault("scan_options", ScanConfig(cancel_grace_seconds=0.05))
    return BatchPipeline(repos, PrType.DEV_TO_STAGING, git, pulls, **kwargs)


async def _to_confirmation(pipeline: BatchPipeline, indices) -> None:
    await pipeline.open()
    for i in indices:
        pipeline.selection.select(i)
    assert pipeline.commit_selection()
    await asyncio.wait_for(pipeline.wait_for_scans(), timeout=2)


# ── TestSelectionSet ──────────────────────────────────────────────────────


class TestSelectionSet:
    def test_ordered_by_index(self):
        sel = SelectionSet(5)
        sel.select(3)
        sel.select(0)
        sel.toggle(4)
        assert list(sel) == [0, 3, 4]
        assert len(sel) == 3

    def test_toggle(self):
        sel = SelectionSet(2)
        assert sel.toggle(1) is True
        assert sel.toggle(1) is False
        assert not sel

    def test_select_all_and_clear(self):
        sel = SelectionSet(3)
        sel.select_all()
        assert sel.indices == [0, 1, 2]
        sel.clear()
        assert sel.indices == []

    def test_out_of_range(self):
        with pytest.raises(IndexError):
            SelectionSet(2).select(2)


# ── TestBatchPipeline ─────────────────────────────────────────────────────


class TestBatchPipeline:
    @pytest.mark.asyncio
    async def test_end_to_end(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("A", "B", "C")
        fake_git.diffs["/repos/A"] = diff_factory(("ATT-1",), ("ATT-2",), ())
        fake_git.diffs["/repos/C"] = diff_factory(("ATT-3",), ())
        fake_pulls.existing["/repos/A"] = PullRequestRef(7, "https://github.com/acme/A/pull/7")

        pipeline = _pipeline(repos, fake_git, fake_pulls, linear_org="acme")
        await _to_confirmation(pipeline, [0, 2])

        assert pipeline.state is BatchState.AWAITING_CONFIRMATION
        assert pipeline.existing.repos_with_commits == [0, 2]
        assert set(pipeline.existing.existing_prs) == {0}
        assert pipeline.existing.tickets == ("ATT-1", "ATT-2", "ATT-3")

        assert pipeline.confirm("")
        summary = await pipeline.process_all()
        await pipeline.aclose()

        assert pipeline.state is BatchState.SUMMARIZED
        assert [o.repository.display_name for o in summary.outcomes] == ["A", "C"]
        assert summary.outcomes[0].status == Updated()
        assert summary.outcomes[0].pr_url == "https://github.com/acme/A/pull/7"
        assert summary.outcomes[1].status == Created()
        assert summary.outcomes[1].tickets == ("ATT-3",)
        assert (summary.succeeded, summary.skipped, summary.failed) == (2, 0, 0)

        # title defaults to "<head> → <base>" and the body links tickets
        path, head, base, title, body = fake_pulls.created[0]
        assert (path, head, base, title) == ("/repos/C", "dev", "staging", "dev → staging")
        assert "https://linear.app/acme/issue/att-3" in body

    @pytest.mark.asyncio
    async def test_partial_failure_isolation(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("r1", "r2", "r3", "r4", "r5")
        for repo in repos:
            fake_git.diffs[repo.path] = diff_factory(("ATT-1",))
        fake_git.fetch_errors["/repos/r3"] = TransportError("git fetch: Connection reset")

        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, range(5))
        assert pipeline.confirm("Release")
        summary = await pipeline.process_all()
        await pipeline.aclose()

        assert [o.repository.display_name for o in summary.outcomes] == [
            "r1",
            "r2",
            "r3",
            "r4",
            "r5",
        ]
        assert summary.outcomes[2].status == Failed("git fetch: Connection reset")
        assert all(o.status == Created() for i, o in enumerate(summary.outcomes) if i != 2)
        assert (summary.succeeded, summary.failed) == (4, 1)
        assert [c[3] for c in fake_pulls.created] == ["Release"] * 4

    @pytest.mark.asyncio
    async def test_skip_classification(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("full", "empty")
        fake_git.diffs["/repos/full"] = diff_factory(("ATT-1",))

        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0, 1])
        pipeline.confirm()
        summary = await pipeline.process_all()
        await pipeline.aclose()

        assert summary.outcomes[1].status == Skipped(NO_COMMITS)
        assert summary.outcomes[1].is_skipped
        assert not summary.outcomes[1].is_failed
        assert summary.skipped == 1

    @pytest.mark.asyncio
    async def test_unselected_not_recorded(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/b"] = diff_factory(("ATT-1",))
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [1])
        pipeline.confirm()

        first = await pipeline.process_next()
        assert first.status == Skipped(NOT_SELECTED)
        assert pipeline.outcomes == []
        assert pipeline.state is BatchState.PROCESSING

        second = await pipeline.process_next()
        assert second.status == Created()
        assert pipeline.state is BatchState.SUMMARIZED
        assert len(pipeline.outcomes) == 1
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_processing_error_after_fetch(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("a")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0])

        async def boom(*args):
            raise TransportError("create pull request failed: HTTP 422 Validation Failed")

        fake_pulls.create_pr = boom
        pipeline.confirm()
        summary = await pipeline.process_all()
        await pipeline.aclose()
        assert summary.outcomes[0].status == Failed(
            "create pull request failed: HTTP 422 Validation Failed"
        )

    @pytest.mark.asyncio
    async def test_not_authenticated_aborts(self, fake_git, fake_pulls, make_repos):
        fake_pulls.authenticated = False
        pipeline = _pipeline(make_repos("a"), fake_git, fake_pulls)
        with pytest.raises(NotAuthenticatedError):
            await pipeline.open()
        assert pipeline.scan is None
        assert fake_git.fetch_calls == []

    @pytest.mark.asyncio
    async def test_empty_selection_is_noop(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a", "b"), fake_git, fake_pulls)
        await pipeline.open()
        assert pipeline.commit_selection() is False
        assert pipeline.state is BatchState.SELECTING_REPOS
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_confirm_refused_without_commits(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a", "b"), fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0, 1])
        assert pipeline.existing.repos_with_commits == []
        assert pipeline.confirm("x") is False
        assert pipeline.state is BatchState.AWAITING_CONFIRMATION
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_existing_pr_lookup_error_counts_as_none(
        self, fake_git, fake_pulls, make_repos, diff_factory
    ):
        repos = make_repos("a")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        fake_pulls.find_errors.add("/repos/a")
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0])
        assert pipeline.existing.existing_prs == {}
        assert pipeline.existing.repos_with_commits == [0]
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_lookup_error_counts_as_none(
        self, fake_git, fake_pulls, make_repos, diff_factory
    ):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        fake_git.diffs["/repos/b"] = diff_factory(("ATT-2",))
        fake_pulls.existing["/repos/b"] = PullRequestRef(7, "https://x/7")
        real_find = fake_pulls.find_open_pr

        async def find_open_pr(path, head, base):
            if path == "/repos/a":
                raise KeyError("owner")
            return await real_find(path, head, base)

        fake_pulls.find_open_pr = find_open_pr
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0, 1])

        assert pipeline.state is BatchState.AWAITING_CONFIRMATION
        assert list(pipeline.existing.existing_prs) == [1]
        assert pipeline.existing.repos_with_commits == [0, 1]
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_process_next_without_run_raises(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a"), fake_git, fake_pulls)
        pipeline.state = BatchState.PROCESSING
        with pytest.raises(RuntimeError, match="without a run"):
            await pipeline.process_next()

    @pytest.mark.asyncio
    async def test_wait_does_not_block_on_unselected(
        self, fake_git, fake_pulls, make_repos, diff_factory
    ):
        repos = make_repos("fast", "slow")
        fake_git.diffs["/repos/fast"] = diff_factory(("ATT-1",))
        fake_git.delays["/repos/slow"] = 30
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        await _to_confirmation(pipeline, [0])
        assert pipeline.state is BatchState.AWAITING_CONFIRMATION
        assert pipeline.scan.cancelled
        await asyncio.wait_for(pipeline.aclose(), timeout=2)
        assert fake_git.cancelled == ["/repos/slow"]

    @pytest.mark.asyncio
    async def test_stream_closed_early_goes_to_error(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a"), fake_git, fake_pulls)
        await pipeline.open()
        pipeline.selection.select(0)
        pipeline.commit_selection()
        pipeline.scan.cancel()  # the result of "a" is discarded

        await asyncio.wait_for(pipeline.wait_for_scans(), timeout=2)
        assert pipeline.state is BatchState.ERROR
        assert pipeline.error
        assert pipeline.recover() is BatchState.SELECTING_REPOS
        assert pipeline.error is None

        await pipeline.reset()
        assert pipeline.scan is None
        assert not pipeline.selection

    @pytest.mark.asyncio
    async def test_operation_in_wrong_state(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a"), fake_git, fake_pulls)
        with pytest.raises(RuntimeError):
            pipeline.confirm()
        with pytest.raises(RuntimeError):
            await pipeline.process_next()

    @pytest.mark.asyncio
    async def test_progress_labels_in_order(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("new", "existing", "empty")
        fake_git.diffs["/repos/new"] = diff_factory(("ATT-1",))
        fake_git.diffs["/repos/existing"] = diff_factory(("ATT-2",))
        fake_pulls.existing["/repos/existing"] = PullRequestRef(3, "https://x/3")

        reporter = ProgressReporter()
        seen = []
        reporter.callbacks.append(
            lambda p: seen.append((p.repository, p.step)) if p.status == "running" else None
        )
        pipeline = _pipeline(repos, fake_git, fake_pulls, reporter=reporter)
        await _to_confirmation(pipeline, [0, 1, 2])
        pipeline.confirm()
        await pipeline.process_all()
        await pipeline.aclose()

        assert seen == [
            ("new", "Fetching branches..."),
            ("new", "Getting commits..."),
            ("new", "Checking for existing PR..."),
            ("new", "Creating PR..."),
            ("existing", "Fetching branches..."),
            ("existing", "Getting commits..."),
            ("existing", "Checking for existing PR..."),
            ("existing", "Updating PR..."),
            ("empty", "Fetching branches..."),
            ("empty", "Getting commits..."),
        ]

    @pytest.mark.asyncio
    async def test_select_names(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("frontend/web", "backend/api"), fake_git, fake_pulls)
        pipeline.select_names(["backend/api"])
        assert pipeline.selection.indices == [1]
        with pytest.raises(ValueError, match="nope"):
            pipeline.select_names(["nope"])

    @pytest.mark.asyncio
    async def test_run(self, fake_git, fake_pulls, make_repos, diff_factory):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        pipeline = _pipeline(repos, fake_git, fake_pulls)
        summary = await asyncio.wait_for(pipeline.run(["a"], "Release"), timeout=2)
        assert [o.label for o in summary.outcomes] == ["created"]
        assert pipeline.scan.closed

    @pytest.mark.asyncio
    async def test_run_nothing_to_release(self, fake_git, fake_pulls, make_repos):
        pipeline = _pipeline(make_repos("a"), fake_git, fake_pulls)
        summary = await asyncio.wait_for(pipeline.run(), timeout=2)
        assert summary.outcomes == []
        assert fake_pulls.created == []


# ── TestDryRun ────────────────────────────────────────────────────────────


class TestDryRun:
    @pytest.mark.asyncio
    async def test_reaches_every_state(self):
        from prfleet.core.config import compile_ticket_pattern

        repos = [
            RepositoryRef(f"/repos/service-{i}", f"backend/service-{i}") for i in range(9)
        ]
        pipeline = BatchPipeline(
            repos,
            PrType.DEV_TO_STAGING,
            DryRunGitClient(delay_scale=0),
            DryRunPullRequestClient(delay_scale=0),
            ticket_pattern=compile_ticket_pattern("ATT-[0-9]+"),
        )
        visited = []
        await pipeline.open()
        visited.append(pipeline.state)
        pipeline.selection.select_all()
        pipeline.commit_selection()
        visited.append(pipeline.state)
        await asyncio.wait_for(pipeline.wait_for_scans(), timeout=2)
        visited.append(pipeline.state)
        assert pipeline.confirm()
        visited.append(pipeline.state)
        summary = await pipeline.process_all()
        visited.append(pipeline.state)
        await pipeline.aclose()

        assert visited == [
            BatchState.SELECTING_REPOS,
            BatchState.WAITING_FOR_SCANS,
            BatchState.AWAITING_CONFIRMATION,
            BatchState.PROCESSING,
            BatchState.SUMMARIZED,
        ]
        assert len(summary.outcomes) == 9
        assert summary.failed == 0
        assert all(url.endswith("(DRY RUN)") for url in summary.urls)
        assert summary.succeeded + summary.skipped == 9
