"""Operator control surface shared by the CLI and the HTTP API."""

import logging
from typing import Optional

from ..errors import RunNotFound
from ..models.migration import JobState, Platform
from .ledger import MigrationLedger
from .reporter import StatusReporter, StatusSummary

logger = logging.getLogger(__name__)


class MigrationControl:
    """
    Pause, resume, stop and repair a migration run.

    Every operation writes straight to the ledger, so it takes effect in a
    pass running in another process before that pass starts its next job.
    """

    def __init__(self, ledger: MigrationLedger, reporter: Optional[StatusReporter] = None):
        self.ledger = ledger
        self.reporter = reporter or StatusReporter(ledger)

    def _require_run(self) -> None:
        if self.ledger.load_run() is None:
            raise RunNotFound(f"No migration run named '{self.ledger.run_name}'")

    def pause(self) -> None:
        """Stop starting new jobs. In-flight jobs finish and are recorded."""
        self.ledger.mark_paused(True)

    def resume(self) -> None:
        self.ledger.mark_paused(False)

    def stop(self) -> None:
        """Halt the active pass after its in-flight jobs; the cursor is kept."""
        self._require_run()
        self.ledger.request_stop(True)
        logger.info(f"Stop requested for run {self.ledger.run_name}")

    def status(self) -> StatusSummary:
        self._require_run()
        return self.reporter.summary()

    def requeue(
        self,
        state: JobState = JobState.FAILED,
        platform: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> int:
        """
        Make failed (or stuck) keys eligible again on the next pass.

        Failed keys upload from scratch. Stuck uploads are verified and
        unpublished containers are published, never recreated.

        Args:
            state: Entries in this state are requeued
            platform: Limit to one platform
            record_id: Limit to one record

        Returns:
            Number of entries requeued
        """
        self._require_run()
        if platform:
            platform = Platform(platform.lower()).value
        return self.ledger.requeue(state=state, platform=platform, record_id=record_id)

    def reset_cursor(self) -> None:
        """Restart paging from the first page. Finished keys are still skipped."""
        self._require_run()
        self.ledger.reset_cursor()
