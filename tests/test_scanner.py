"""Tests for ScanSession: streaming, soft errors, cancellation, close."""

from __future__ import annotations

import asyncio

import pytest

from prfleet.engines.scanner import ScanSession
from prfleet.exceptions import RefNotFoundError, TransportError
from prfleet.models import PrType, RepositoryRef, ScanState


async def _drain(session: ScanSession) -> list:
    events = []
    async for event in session.stream():
        session.apply(event)
        events.append(event)
    return events


class TestStreaming:
    @pytest.mark.asyncio
    async def test_every_repository_reports_then_close(self, fake_git, make_repos, diff_factory):
        repos = make_repos("a", "b", "c")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        fake_git.delays["/repos/a"] = 0.02

        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
        session.start()
        events = await asyncio.wait_for(_drain(session), timeout=2)

        assert sorted(e.index for e in events) == [0, 1, 2]
        # the slow repository arrives last
        assert events[-1].index == 0
        assert session.states == [ScanState.POPULATED, ScanState.EMPTY, ScanState.EMPTY]
        assert session.pending_count == 0
        assert session.closed
        assert await session.next_result() is None
        assert await session.next_result() is None

    @pytest.mark.asyncio
    async def test_branch_pair_follows_pr_type(self, fake_git):
        repos = [
            RepositoryRef("/repos/a", "a", main_branch="master"),
            RepositoryRef("/repos/b", "b"),
        ]
        session = ScanSession(repos, PrType.STAGING_TO_MAIN, fake_git)
        session.start()
        await _drain(session)
        assert sorted(fake_git.fetch_calls) == [
            ("/repos/a", ["master", "staging"]),
            ("/repos/b", ["main", "staging"]),
        ]

    @pytest.mark.asyncio
    async def test_stream_closes_only_after_all_workers(self, fake_git, make_repos):
        repos = make_repos("a", "b", "c", "d")
        for i, repo in enumerate(repos):
            fake_git.delays[repo.path] = 0.01 * i
        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
        session.start()
        await _drain(session)
        assert all(task.done() for task in session._workers)

    @pytest.mark.asyncio
    async def test_empty_repository_list(self, fake_git):
        session = ScanSession([], PrType.DEV_TO_STAGING, fake_git)
        session.start()
        assert await asyncio.wait_for(session.next_result(), timeout=1) is None

    @pytest.mark.asyncio
    async def test_start_twice(self, fake_git, make_repos):
        session = ScanSession(make_repos("a"), PrType.DEV_TO_STAGING, fake_git)
        session.start()
        with pytest.raises(RuntimeError):
            session.start()
        await session.aclose()

    @pytest.mark.asyncio
    async def test_next_result_before_start(self, fake_git, make_repos):
        session = ScanSession(make_repos("a"), PrType.DEV_TO_STAGING, fake_git)
        with pytest.raises(RuntimeError):
            await session.next_result()

    @pytest.mark.asyncio
    async def test_idempotent_rescan(self, fake_git, make_repos, diff_factory):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",), ("ATT-2",))

        results = []
        for _ in range(2):
            session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
            session.start()
            await _drain(session)
            results.append([session.diff(i) for i in range(len(repos))])
        assert results[0] == results[1]


class TestSoftErrors:
    @pytest.mark.asyncio
    async def test_fetch_error_becomes_empty_diff(self, fake_git, make_repos, diff_factory):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        fake_git.diffs["/repos/b"] = diff_factory(("ATT-2",))
        fake_git.fetch_errors["/repos/b"] = TransportError("git fetch: Connection refused")

        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
        session.start()
        events = {e.index: e for e in await _drain(session)}

        assert events[1].diff.is_empty
        assert events[1].error == "git fetch: Connection refused"
        assert events[0].error is None
        assert session.state(1) is ScanState.EMPTY
        assert session.error(1) == "git fetch: Connection refused"
        assert session.state(0) is ScanState.POPULATED

    @pytest.mark.asyncio
    async def test_missing_branch_becomes_empty_diff(self, fake_git, make_repos):
        repos = make_repos("a")
        fake_git.fetch_errors["/repos/a"] = RefNotFoundError(["dev"])
        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git, surface_errors=True)
        session.start()
        (event,) = await _drain(session)
        assert event.diff.is_empty
        assert "dev" in event.error


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_once_selected_report(self, fake_git, make_repos, diff_factory):
        repos = make_repos(*(f"r{i}" for i in range(10)))
        selected = [1, 4, 7]
        for i, repo in enumerate(repos):
            fake_git.delays[repo.path] = 0 if i in selected else 30
            fake_git.diffs[repo.path] = diff_factory(("ATT-1",))

        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
        session.start()

        async def wait_selected():
            while not session.all_settled(selected):
                event = await session.next_result()
                assert event is not None
                session.apply(event)

        await asyncio.wait_for(wait_selected(), timeout=2)
        assert session.pending_count == 7

        await asyncio.wait_for(session.aclose(grace=0.05), timeout=2)

        assert session.closed
        assert await session.next_result() is None
        assert sorted(fake_git.cancelled) == sorted(
            repo.path for i, repo in enumerate(repos) if i not in selected
        )
        assert all(task.done() for task in session._workers)

    @pytest.mark.asyncio
    async def test_cancel_before_workers_run(self, fake_git, make_repos):
        session = ScanSession(make_repos("a", "b"), PrType.DEV_TO_STAGING, fake_git)
        session.start()
        session.cancel()
        assert session.cancelled
        assert await asyncio.wait_for(session.next_result(), timeout=1) is None
        assert fake_git.fetch_calls == []

    @pytest.mark.asyncio
    async def test_results_after_cancel_are_discarded(self, fake_git, make_repos, diff_factory):
        repos = make_repos("a", "b")
        fake_git.diffs["/repos/a"] = diff_factory(("ATT-1",))
        session = ScanSession(repos, PrType.DEV_TO_STAGING, fake_git)
        session.start()
        await asyncio.sleep(0.05)  # both workers publish
        session.cancel()
        assert await asyncio.wait_for(session.next_result(), timeout=1) is None

    @pytest.mark.asyncio
    async def test_aclose_without_start(self, fake_git, make_repos):
        session = ScanSession(make_repos("a"), PrType.DEV_TO_STAGING, fake_git)
        await session.aclose()
        assert session.closed


class TestConcurrencyLimit:
    @pytest.mark.asyncio
    async def test_max_concurrency(self, fake_git, make_repos):
        active = 0
        peak = 0

        async def fetch(path, branches):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        fake_git.fetch_branches = fetch
        session = ScanSession(
            make_repos("a", "b", "c", "d", "e"), PrType.DEV_TO_STAGING, fake_git, max_concurrency=2
        )
        session.start()
        events = await asyncio.wait_for(_drain(session), timeout=2)
        assert len(events) == 5
        assert peak == 2
