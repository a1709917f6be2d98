"""Sync orchestrator - drives a resumable migration pass."""

import logging
import random
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .adapters import AdapterRef, PlatformAdapter, create_adapter
from .credentials import CredentialProvider, EnvCredentialProvider
from .errors import (
    AdapterError,
    AuthExpiredError,
    CursorLost,
    PermanentRejectError,
    SyndicationError,
    TransientError,
)
from .models.migration import (
    JobState,
    LedgerEntry,
    LedgerKey,
    MigrationConfig,
    MigrationRun,
    Platform,
    PublishJob,
    RunStatus,
    RunTotals,
)
from .models.record import MediaDescriptor, SourcePage, SourceRecord, utc_now
from .services.ledger import MigrationLedger
from .services.rate_limiter import RateLimiter
from .sources import BaseSource, create_source

logger = logging.getLogger(__name__)

# Job outcomes, named after the RunTotals counters they increment
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"
RESUMED = "resumed"
DEFERRED = "deferred"

# Phases of a job, used to decide the ledger state after a transient failure
VERIFY = "verify"
UPLOAD = "upload"
FINALIZE = "finalize"


class SyncOrchestrator:
    """
    Orchestrates a migration pass over the source of record.

    Handles:
    - Paging through the source with a durable cursor
    - Per-key idempotence through the ledger
    - Single-phase and two-phase publishing
    - Rate limiting, bounded backoff and credential refresh
    - Cooperative pause and stop between jobs
    - Crash recovery of interrupted uploads and unpublished containers
    """

    def __init__(
        self,
        config: MigrationConfig,
        source: BaseSource,
        adapters: Dict[str, PlatformAdapter],
        ledger: MigrationLedger,
        rate_limiter: Optional[RateLimiter] = None,
        credentials: Optional[CredentialProvider] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            source: Source of record to page through
            adapters: Platform name -> adapter, one per configured target
            ledger: Durable ledger for this run
            rate_limiter: Shared per-platform limiter
            credentials: Credential provider, asked per job
            sleep: Used for backoff and pause polling
            clock: Returns the current epoch time in seconds
        """
        platforms = [t.platform for t in config.targets]
        if len(set(platforms)) != len(platforms):
            raise ValueError(f"Each platform may only be targeted once: {platforms}")
        missing = [p for p in platforms if p not in adapters]
        if missing:
            raise ValueError(f"No adapter configured for: {', '.join(missing)}")
        if config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._targets = {t.platform: t for t in config.targets}
        for target in config.targets:
            upstream = target.source_platform
            if upstream is None:
                continue
            if upstream == target.platform or upstream not in self._targets:
                raise ValueError(f"{target.platform} reads hosted media from {upstream}, which is not another target")
            if self._targets[upstream].source_platform:
                raise ValueError(f"{upstream} hosts media for {target.platform} and cannot read from another target")

        self.config = config
        self.source = source
        self.adapters = adapters
        self.ledger = ledger
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limits, clock=clock, sleep=sleep)
        self.credentials = credentials or EnvCredentialProvider()
        self._sleep = sleep
        self._clock = clock

        self.run: Optional[MigrationRun] = None
        self._halt = threading.Event()
        self._totals_lock = threading.Lock()

    def run_migration(self, wait_when_paused: bool = True) -> MigrationRun:
        """
        Run one pass of the migration, resuming wherever the last one stopped.

        Args:
            wait_when_paused: Poll until resumed instead of returning a paused run

        Returns:
            MigrationRun with status and totals for this pass
        """
        self._check_credentials()
        run = self._prepare_run()
        self.run = run

        try:
            while True:
                if self.ledger.is_stop_requested():
                    return self._finish(run, RunStatus.STOPPED)

                if self.ledger.is_paused():
                    self._set_status(run, RunStatus.PAUSED)
                    logger.info(f"Run {run.name} is paused; no new jobs will start")
                    if not wait_when_paused:
                        return run
                    self._wait_while_paused()
                    if self.ledger.is_stop_requested():
                        continue
                    logger.info(f"Run {run.name} resumed")
                    self._set_status(run, RunStatus.RUNNING)

                logger.info(f"Fetching page {run.pages_completed + 1} (cursor: {run.cursor})")
                page = self.source.list(run.cursor, self.config.batch_size)
                halted = self._process_page(page, run)

                if halted:
                    # Cursor stays put; finished keys are skipped when the page is re-read.
                    self._save_progress(run)
                    continue

                run.cursor = page.next_cursor
                run.pages_completed += 1
                self._save_progress(run)

                if page.is_last:
                    return self._finish(run, RunStatus.COMPLETED)

        except Exception as e:
            logger.error(f"Migration {run.name} failed: {e}")
            run.status = RunStatus.FAILED
            run.last_error = str(e)
            self._save_after_failure(run)
            raise

    def request_stop(self) -> None:
        """Ask the running pass to halt after its in-flight jobs."""
        self.ledger.request_stop(True)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _prepare_run(self) -> MigrationRun:
        run = self.ledger.start_run()

        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run.name} completed previously; starting a new pass")
            run.cursor = None
            run.pages_completed = 0
            run.totals = RunTotals()
            run.started_at = None
            run.completed_at = None
        elif run.pages_completed > 0 and run.cursor is None:
            error = CursorLost(
                f"Run {run.name} completed {run.pages_completed} pages but has no cursor; "
                "reset the cursor to restart from the first page"
            )
            run.status = RunStatus.FAILED
            run.last_error = str(error)
            self.ledger.save_run(run)
            raise error
        elif run.started_at is not None:
            logger.info(f"Resuming run {run.name} at page {run.pages_completed + 1}")

        # A stop request only applies to the pass it was issued against.
        self.ledger.request_stop(False)

        run.status = RunStatus.RUNNING
        run.last_error = None
        run.started_at = run.started_at or utc_now()
        self.ledger.save_run(run)
        return run

    def _check_credentials(self) -> None:
        """Fail fast when a target platform has no credentials at all."""
        for platform in self.adapters:
            self.credentials.get(platform)

    def _wait_while_paused(self) -> None:
        while self.ledger.is_paused() and not self.ledger.is_stop_requested():
            self._sleep(self.config.pause_poll_interval)

    def _set_status(self, run: MigrationRun, status: RunStatus) -> None:
        run.status = status
        self.ledger.save_run(run)

    def _save_progress(self, run: MigrationRun) -> None:
        """Persist the run and the budgets it has drawn on, for status readers in other processes."""
        self.ledger.save_run(run)
        budgets = {
            platform: budget
            for platform, budget in self.rate_limiter.snapshot().items()
            if budget.window_started_at or budget.blocked_until
        }
        if budgets:
            self.ledger.save_rate_budgets(budgets)

    def _finish(self, run: MigrationRun, status: RunStatus) -> MigrationRun:
        run.status = status
        if status == RunStatus.COMPLETED:
            run.completed_at = utc_now()
        self._save_progress(run)
        logger.info(
            f"Run {run.name} {status.value}: {run.totals.succeeded} succeeded, "
            f"{run.totals.failed} failed, {run.totals.skipped} skipped, "
            f"{run.totals.resumed} resumed, {run.totals.deferred} deferred"
        )
        return run

    def _save_after_failure(self, run: MigrationRun) -> None:
        try:
            self.ledger.save_run(run)
        except SyndicationError as e:
            logger.error(f"Could not record failure of run {run.name}: {e}")

    # ------------------------------------------------------------------
    # Pages and partitions
    # ------------------------------------------------------------------

    def _build_jobs(self, page: SourcePage) -> List[Tuple[SourceRecord, PublishJob]]:
        jobs = []
        for record in page.records:
            for target in self.config.targets:
                for descriptor in record.media_for(target.fields):
                    jobs.append((record, PublishJob(record.id, target.platform, descriptor)))
        return jobs

    def _partition(
        self, jobs: List[Tuple[SourceRecord, PublishJob]]
    ) -> List[List[Tuple[SourceRecord, PublishJob]]]:
        """Split jobs so that one (record, platform) pair always lands in the same partition, in order."""
        workers = max(1, self.config.parallel_workers)
        partitions: Dict[int, List[Tuple[SourceRecord, PublishJob]]] = {}
        for record, job in jobs:
            slot = zlib.crc32(f"{job.record_id}\x00{job.platform}".encode()) % workers
            partitions.setdefault(slot, []).append((record, job))
        return [partitions[slot] for slot in sorted(partitions)]

    def _process_page(self, page: SourcePage, run: MigrationRun) -> bool:
        """
        Attempt every job of a page.

        Returns:
            True if a pause or stop request interrupted the page
        """
        self._halt.clear()
        jobs = self._build_jobs(page)
        if not jobs:
            return False

        logger.info(f"Processing {len(page.records)} records as {len(jobs)} jobs")

        # Targets that publish another target's hosted copy run after it.
        direct = [(record, job) for record, job in jobs if not self._upstream(job.platform)]
        dependent = [(record, job) for record, job in jobs if self._upstream(job.platform)]
        for stage in (direct, dependent):
            if stage:
                self._run_stage(stage, run)
            if self._halt.is_set():
                return True
        return False

    def _run_stage(self, jobs: List[Tuple[SourceRecord, PublishJob]], run: MigrationRun) -> None:
        partitions = self._partition(jobs)
        logger.debug(f"Running {len(jobs)} jobs in {len(partitions)} partitions")

        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=len(partitions), thread_name_prefix="sync") as pool:
            futures = [pool.submit(self._run_partition, partition, run) for partition in partitions]
            for future in futures:
                try:
                    future.result()
                except Exception as e:
                    if first_error is None:
                        first_error = e
                    else:
                        logger.error(f"Additional worker failure: {e}")

        if first_error is not None:
            raise first_error

    def _upstream(self, platform: str) -> Optional[str]:
        return self._targets[platform].source_platform

    def _run_partition(self, partition: List[Tuple[SourceRecord, PublishJob]], run: MigrationRun) -> None:
        for record, job in partition:
            if self._halt.is_set():
                return
            if self.ledger.is_stop_requested() or self.ledger.is_paused():
                self._halt.set()
                return

            try:
                outcome = self._run_job(record, job)
            except Exception:
                self._halt.set()
                raise

            with self._totals_lock:
                run.totals.processed += 1
                setattr(run.totals, outcome, getattr(run.totals, outcome) + 1)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _run_job(self, record: SourceRecord, job: PublishJob) -> str:
        """Drive one key to a resting state and return its outcome."""
        key = job.key
        adapter = self.adapters[job.platform]
        entry = self.ledger.get(key)

        if entry is not None and entry.state.is_terminal:
            logger.debug(f"Skipping {key}: already {entry.state.value}")
            return SKIPPED

        if entry is None:
            entry = LedgerEntry()
        elif entry.state == JobState.AWAITING_PUBLISH and entry.next_eligible_at is None:
            # A finalize left over from an earlier pass gets a fresh retry budget.
            entry.attempts = 0

        descriptor = job.descriptor
        upstream = self._upstream(job.platform)
        if upstream and entry.state != JobState.AWAITING_PUBLISH:
            hosted = self.ledger.get(LedgerKey(key.record_id, upstream, key.target_field))
            if hosted is None or hosted.state != JobState.DONE:
                self._wait_for_upstream(key, entry, upstream)
                return DEFERRED
            if not hosted.metadata.get("url"):
                self._fail(key, entry, PermanentRejectError(
                    f"{upstream} recorded no hosted URL for {key.record_id}/{key.target_field}",
                    platform=job.platform,
                ))
                return FAILED
            descriptor = replace(
                descriptor,
                source_url=hosted.metadata["url"],
                local_path=None,
                filename=descriptor.resolved_filename,
            )

        resumed = entry.state in (JobState.UPLOADING, JobState.AWAITING_PUBLISH)
        if resumed:
            logger.info(f"Resuming {key} from {entry.state.value}")

        auth_refreshes = 0
        while True:
            job.state = entry.state
            job.attempts = entry.attempts
            self._wait_until_eligible(entry)

            if entry.state == JobState.UPLOADING:
                phase = VERIFY
            elif entry.state == JobState.AWAITING_PUBLISH:
                phase = FINALIZE
            else:
                phase = UPLOAD

            try:
                if phase == VERIFY:
                    self._verify(record, descriptor, adapter, key, entry)
                elif phase == FINALIZE:
                    self._finalize(adapter, key, entry)
                else:
                    self._upload(record, descriptor, adapter, key, entry)

            except TransientError as e:
                outcome = self._handle_transient(adapter, key, entry, e, phase)
                if outcome is not None:
                    return outcome
                continue

            except AuthExpiredError as e:
                auth_refreshes += 1
                if auth_refreshes > self.config.max_auth_refreshes:
                    self._fail(key, entry, e, keep_ref=phase == FINALIZE)
                    return FAILED
                logger.warning(f"{key}: credentials rejected, refreshing ({auth_refreshes}/{self.config.max_auth_refreshes})")
                self.credentials.refresh(job.platform)
                if phase == UPLOAD:
                    # An auth rejection means nothing was written.
                    entry.state = JobState.PENDING
                continue

            except PermanentRejectError as e:
                self._fail(key, entry, e, keep_ref=phase == FINALIZE)
                return FAILED

            if entry.state == JobState.DONE:
                return RESUMED if resumed else SUCCEEDED
            if entry.state == JobState.FAILED:
                return FAILED

    def _verify(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        adapter: PlatformAdapter,
        key: LedgerKey,
        entry: LedgerEntry,
    ) -> None:
        """Decide what to do with an upload that may or may not have been applied."""
        if not adapter.can_verify:
            if adapter.recreate_is_safe:
                logger.info(f"{key}: interrupted upload left nothing visible; uploading again")
                entry.state = JobState.PENDING
                self.ledger.put(key, entry)
                return
            entry.state = JobState.FAILED
            entry.error_kind = "unverified"
            entry.last_error = (
                f"Upload to {adapter.platform} was interrupted and cannot be verified; "
                "check the platform and requeue to retry"
            )
            entry.next_eligible_at = None
            self.ledger.put(key, entry)
            logger.error(f"{key}: {entry.last_error}")
            return

        self.rate_limiter.wait_for(adapter.platform)
        ref = adapter.find_existing(record, descriptor, self.credentials.get(adapter.platform))

        if ref is None:
            logger.info(f"{key}: interrupted upload was not applied; uploading again")
            entry.state = JobState.PENDING
            self.ledger.put(key, entry)
        elif adapter.is_two_phase:
            logger.info(f"{key}: found container {ref.id} from interrupted upload")
            self._record_container(key, entry, ref)
        else:
            logger.info(f"{key}: interrupted upload was applied as {ref.id}")
            self._record_done(key, entry, ref.id, ref)

    def _upload(
        self,
        record: SourceRecord,
        descriptor: MediaDescriptor,
        adapter: PlatformAdapter,
        key: LedgerKey,
        entry: LedgerEntry,
    ) -> None:
        self.rate_limiter.wait_for(adapter.platform)
        credentials = self.credentials.get(adapter.platform)

        # Written before the call so a crash mid-upload is detectable on restart.
        entry.state = JobState.UPLOADING
        entry.next_eligible_at = None
        self.ledger.put(key, entry)

        ref = adapter.upload_media(record, descriptor, credentials)

        if adapter.is_two_phase:
            self._record_container(key, entry, ref)
        else:
            self._record_done(key, entry, adapter.finalize(ref, credentials), ref)

    def _finalize(self, adapter: PlatformAdapter, key: LedgerKey, entry: LedgerEntry) -> None:
        metadata = dict(entry.metadata)
        url = metadata.pop("url", None)
        ref = AdapterRef(id=entry.external_ref, url=url, extra=metadata)
        credentials = self.credentials.get(adapter.platform)

        published_id = None
        if adapter.can_verify_publish:
            self.rate_limiter.wait_for(adapter.platform)
            published_id = adapter.find_published(ref, credentials)

        if published_id is None:
            self.rate_limiter.wait_for(adapter.platform)
            published_id = adapter.finalize(ref, credentials)
        else:
            logger.info(f"{key}: container {ref.id} was already published")
        self._record_done(key, entry, published_id, ref)

    def _wait_for_upstream(self, key: LedgerKey, entry: LedgerEntry, upstream: str) -> None:
        entry.last_error = f"Waiting for the {upstream} upload of {key.record_id}/{key.target_field}"
        entry.error_kind = "awaiting_source"
        entry.next_eligible_at = None
        self.ledger.put(key, entry)
        logger.info(f"{key}: {entry.last_error}; deferring")

    def _record_container(self, key: LedgerKey, entry: LedgerEntry, ref: AdapterRef) -> None:
        entry.state = JobState.AWAITING_PUBLISH
        entry.external_ref = ref.id
        entry.metadata = ref.to_metadata()
        entry.attempts = 0
        entry.next_eligible_at = None
        self._clear_error(entry)
        self.ledger.put(key, entry)

    def _record_done(self, key: LedgerKey, entry: LedgerEntry, published_id: str, ref: AdapterRef) -> None:
        entry.state = JobState.DONE
        entry.external_ref = ref.id
        entry.published_id = published_id
        entry.metadata = ref.to_metadata()
        entry.next_eligible_at = None
        self._clear_error(entry)
        self.ledger.put(key, entry)
        logger.info(f"{key}: published as {published_id}")

    @staticmethod
    def _clear_error(entry: LedgerEntry) -> None:
        entry.last_error = None
        entry.error_kind = None
        entry.error_payload = None

    def _fail(self, key: LedgerKey, entry: LedgerEntry, error: AdapterError, keep_ref: bool = False) -> None:
        entry.state = JobState.FAILED
        entry.last_error = str(error)
        entry.error_kind = error.kind
        entry.error_payload = _payload_dict(error.payload)
        entry.next_eligible_at = None
        if not keep_ref:
            entry.external_ref = None
        self.ledger.put(key, entry)
        logger.error(f"{key}: failed ({error.kind}): {error}")

    # ------------------------------------------------------------------
    # Retry state machine
    # ------------------------------------------------------------------

    def _handle_transient(
        self,
        adapter: PlatformAdapter,
        key: LedgerKey,
        entry: LedgerEntry,
        error: TransientError,
        phase: str,
    ) -> Optional[str]:
        """
        Record a transient failure and schedule the next attempt.

        Returns:
            None to retry, or the job outcome once attempts are exhausted
        """
        entry.attempts += 1
        entry.last_error = str(error)
        entry.error_kind = error.kind
        entry.error_payload = _payload_dict(error.payload)

        if entry.attempts >= self.config.max_attempts:
            entry.next_eligible_at = None
            if phase == FINALIZE:
                # The container is still valid; the next pass publishes it.
                self.ledger.put(key, entry)
                logger.warning(f"{key}: publish still failing after {entry.attempts} attempts; deferring")
                return DEFERRED
            entry.state = JobState.FAILED
            entry.external_ref = None
            self.ledger.put(key, entry)
            logger.error(f"{key}: giving up after {entry.attempts} attempts: {error}")
            return FAILED

        if error.retry_after is not None:
            delay = error.retry_after
            self.rate_limiter.defer(adapter.platform, self._clock() + delay)
        else:
            delay = self._backoff(entry.attempts)

        if phase == UPLOAD:
            # A request that never got a response may still have been applied.
            ambiguous = error.status_code is None and adapter.can_verify
            entry.state = JobState.UPLOADING if ambiguous else JobState.PENDING

        entry.next_eligible_at = datetime.fromtimestamp(self._clock() + delay, tz=timezone.utc)
        self.ledger.put(key, entry)
        logger.warning(
            f"{key}: {error} (attempt {entry.attempts}/{self.config.max_attempts}), retrying in {delay:.1f}s"
        )
        return None

    def _backoff(self, attempts: int) -> float:
        """Exponential backoff with jitter, capped at backoff_cap."""
        delay = min(self.config.backoff_cap, self.config.backoff_base * (2 ** (attempts - 1)))
        return delay / 2 + random.uniform(0, delay / 2)

    def _wait_until_eligible(self, entry: LedgerEntry) -> None:
        if entry.next_eligible_at is None:
            return
        delay = entry.next_eligible_at.timestamp() - self._clock()
        if delay > 0:
            self._sleep(delay)


def _payload_dict(payload) -> Optional[dict]:
    if payload is None:
        return None
    if isinstance(payload, dict):
        return payload
    return {"body": payload}


def build_orchestrator(
    config: MigrationConfig,
    credentials: Optional[CredentialProvider] = None,
    source: Optional[BaseSource] = None,
    ledger: Optional[MigrationLedger] = None,
) -> SyncOrchestrator:
    """
    Wire up an orchestrator from configuration.

    Args:
        config: Migration configuration
        credentials: Credential provider (defaults to environment variables)
        source: Override the configured source
        ledger: Override the configured ledger

    Returns:
        Ready-to-run SyncOrchestrator
    """
    credentials = credentials or EnvCredentialProvider()
    rate_limiter = RateLimiter(config.rate_limits)
    ledger = ledger or MigrationLedger(config.database_url, config.name)

    if source is None:
        source_config = config.source
        if source_config.type == "airtable" and not source_config.base_id:
            source_config = replace(
                source_config, base_id=credentials.get(Platform.AIRTABLE.value).account_id
            )
        source = create_source(
            source_config,
            api_key_getter=lambda: credentials.get(Platform.AIRTABLE.value).token,
            rate_limiter=rate_limiter,
            timeout=config.request_timeout,
        )

    adapters: Dict[str, PlatformAdapter] = {}
    for target in config.targets:
        if target.platform == Platform.AIRTABLE.value and "table" not in target.options:
            target = replace(target, options={**target.options, "table": config.source.table})
        adapters[target.platform] = create_adapter(target, timeout=config.request_timeout)

    return SyncOrchestrator(
        config=config,
        source=source,
        adapters=adapters,
        ledger=ledger,
        rate_limiter=rate_limiter,
        credentials=credentials,
    )
