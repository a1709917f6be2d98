"""
Status reporting and operator control tests.
"""

import pytest

from syndication.errors import RunNotFound
from syndication.models.migration import JobState, LedgerEntry, LedgerKey, RateBudget, RunStatus
from syndication.services.control import MigrationControl
from syndication.services.rate_limiter import RateLimiter
from syndication.services.reporter import StatusReporter
from tests.conftest import FakeAdapter, FakeClock, ListSource, make_record


@pytest.fixture
def populated(ledger):
    run = ledger.start_run()
    run.status = RunStatus.RUNNING
    run.cursor = "itr/page3"
    run.pages_completed = 2
    run.totals.succeeded = 2
    ledger.save_run(run)

    ledger.put(LedgerKey("rec1", "discord", "photo"), LedgerEntry(state=JobState.DONE, published_id="m1"))
    ledger.put(LedgerKey("rec2", "discord", "photo"), LedgerEntry(state=JobState.DONE, published_id="m2"))
    ledger.put(
        LedgerKey("rec3", "discord", "photo"),
        LedgerEntry(state=JobState.FAILED, last_error="Invalid Form Body", error_kind="permanent_reject"),
    )
    ledger.put(
        LedgerKey("rec1", "instagram", "photo"),
        LedgerEntry(state=JobState.AWAITING_PUBLISH, external_ref="c-1", last_error="[instagram] busy (HTTP 503)",
                    error_kind="transient", attempts=3),
    )
    return ledger


# ============================================================================
# Reporter
# ============================================================================

class TestStatusReporter:

    def test_summary_counts_every_state(self, populated):
        summary = StatusReporter(populated).summary()

        assert summary.run_name == "test-run"
        assert summary.status == "running"
        assert summary.cursor == "itr/page3"
        assert summary.pages_completed == 2
        assert summary.total_keys == 4
        assert summary.count(JobState.DONE) == 2
        assert summary.count(JobState.FAILED, platform="discord") == 1
        assert summary.count(JobState.AWAITING_PUBLISH, platform="instagram") == 1
        assert summary.counts["instagram"]["pending"] == 0
        assert set(summary.counts["discord"]) == {s.value for s in JobState}

    def test_summary_samples_recent_errors(self, populated):
        summary = StatusReporter(populated, error_sample_size=1).summary()

        assert len(summary.recent_errors) == 1

        summary = StatusReporter(populated).summary()
        kinds = {e.key: e.kind for e in summary.recent_errors}
        assert kinds == {
            "rec3/discord/photo": "permanent_reject",
            "rec1/instagram/photo": "transient",
        }

    def test_summary_includes_rate_budgets(self, populated):
        limiter = RateLimiter({"discord": {"capacity": 5, "window": 60}}, clock=FakeClock())
        limiter.admit("discord")

        budgets = StatusReporter(populated, rate_limiter=limiter).summary().rate_budgets

        assert budgets["discord"]["capacity"] == 5
        assert budgets["discord"]["consumed_in_window"] == 1

    def test_summary_reads_recorded_budgets_without_a_limiter(self, populated):
        populated.save_rate_budgets({
            "instagram": RateBudget(capacity=200, refill_window=3600.0, consumed_in_window=12, window_started_at=3600.0),
        })

        budgets = StatusReporter(populated).summary().rate_budgets

        assert budgets == {"instagram": {
            "capacity": 200,
            "refill_window": 3600.0,
            "consumed_in_window": 12,
            "window_started_at": 3600.0,
            "blocked_until": None,
        }}

    def test_summary_does_not_write(self, populated):
        before = populated.entries()
        run_before = populated.load_run()

        StatusReporter(populated).summary()

        assert populated.entries() == before
        assert populated.load_run().updated_at == run_before.updated_at

    def test_to_dict_is_json_friendly(self, populated):
        data = StatusReporter(populated).summary().to_dict()

        assert data["total_keys"] == 4
        assert data["totals"]["succeeded"] == 2
        assert isinstance(data["recent_errors"][0]["message"], str)

    def test_summary_reflects_a_finished_run(self, make_config, make_orchestrator, ledger):
        instagram = FakeAdapter("instagram", two_phase=True)
        source = ListSource([[make_record("rec1", "photo"), make_record("rec2", "photo")]])
        make_orchestrator(make_config("instagram"), source, instagram).run_migration()

        summary = StatusReporter(ledger).summary()

        assert summary.status == "completed"
        assert summary.count(JobState.DONE) == 2
        assert summary.totals["succeeded"] == 2
        assert summary.completed_at is not None


# ============================================================================
# Control
# ============================================================================

class TestMigrationControl:

    def test_pause_and_resume(self, populated):
        control = MigrationControl(populated)

        control.pause()
        assert populated.is_paused()
        assert control.status().paused

        control.resume()
        assert not populated.is_paused()

    def test_pause_before_any_run_is_honoured(self, ledger):
        MigrationControl(ledger).pause()

        assert ledger.load_run().paused

    def test_stop_sets_flag(self, populated):
        MigrationControl(populated).stop()

        assert populated.is_stop_requested()

    def test_requeue_resets_failed_keys(self, populated):
        control = MigrationControl(populated)

        assert control.requeue() == 1
        assert populated.get(LedgerKey("rec3", "discord", "photo")).state == JobState.PENDING

    def test_requeue_by_platform_accepts_any_case(self, populated):
        assert MigrationControl(populated).requeue(platform="Instagram") == 0
        assert MigrationControl(populated).requeue(platform="DISCORD") == 1

    def test_requeue_unknown_platform_rejected(self, populated):
        with pytest.raises(ValueError):
            MigrationControl(populated).requeue(platform="myspace")

    def test_requeue_stuck_awaiting_publish_keeps_container(self, populated):
        requeued = MigrationControl(populated).requeue(state=JobState.AWAITING_PUBLISH)

        assert requeued == 1
        entry = populated.get(LedgerKey("rec1", "instagram", "photo"))
        assert entry.state == JobState.AWAITING_PUBLISH
        assert entry.external_ref == "c-1"
        assert entry.attempts == 0
        assert entry.last_error is None

    def test_reset_cursor(self, populated):
        MigrationControl(populated).reset_cursor()

        run = populated.load_run()
        assert run.cursor is None
        assert run.pages_completed == 0
        assert populated.get(LedgerKey("rec1", "discord", "photo")).state == JobState.DONE

    @pytest.mark.parametrize("operation", ["stop", "status", "requeue", "reset_cursor"])
    def test_operations_need_an_existing_run(self, ledger, operation):
        with pytest.raises(RunNotFound):
            getattr(MigrationControl(ledger), operation)()
