"""Tests for ProgressReporter."""

from __future__ import annotations

import time

from prfleet.progress import ProgressReporter


class TestProgressReporter:
    def test_basic_flow(self):
        reporter = ProgressReporter()
        reporter.begin_repository("frontend/web")
        reporter.step("Fetching branches...")
        assert reporter.current_repository == "frontend/web"
        assert reporter.current_step == "Fetching branches..."
        reporter.step("Getting commits...")
        reporter.finish_repository("created")

        summary = reporter.get_summary()
        assert [s["step"] for s in summary["steps"]] == ["Fetching branches...", "Getting commits..."]
        assert [s["status"] for s in summary["steps"]] == ["completed", "completed"]
        assert summary["steps"][1]["detail"] == "created"
        assert reporter.current_repository == ""
        assert reporter.current_step == ""

    def test_failed_repository(self):
        reporter = ProgressReporter()
        reporter.begin_repository("backend/api")
        reporter.step("Fetching branches...")
        reporter.finish_repository("git fetch: timeout", failed=True)

        step = reporter.get_summary()["steps"][0]
        assert step["status"] == "failed"
        assert step["detail"] == "git fetch: timeout"

    def test_duration(self):
        reporter = ProgressReporter()
        reporter.begin_repository("a")
        reporter.step("Creating PR...")
        time.sleep(0.01)
        reporter.finish_repository()
        assert reporter.steps[0].duration >= 0.01

    def test_duration_running(self):
        reporter = ProgressReporter()
        reporter.step("Fetching branches...")
        assert reporter.steps[0].duration is None

    def test_callbacks_see_start_and_end(self):
        seen = []
        reporter = ProgressReporter()
        reporter.callbacks.append(lambda p: seen.append((p.repository, p.step, p.status)))
        reporter.begin_repository("a")
        reporter.step("Fetching branches...")
        reporter.finish_repository()

        assert seen == [
            ("a", "Fetching branches...", "running"),
            ("a", "Fetching branches...", "completed"),
        ]

    def test_callback_error_does_not_break(self):
        reporter = ProgressReporter()

        def boom(p):
            raise RuntimeError("renderer crashed")

        reporter.callbacks.append(boom)
        reporter.begin_repository("a")
        reporter.step("Fetching branches...")
        reporter.finish_repository()
        assert reporter.steps[0].status == "completed"

    def test_finish_without_steps(self):
        reporter = ProgressReporter()
        reporter.begin_repository("a")
        reporter.finish_repository("skipped")
        assert reporter.steps == []
