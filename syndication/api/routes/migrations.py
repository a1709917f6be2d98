"""Migration status and control endpoints.

The migration is described by the JSON config file named in ``SYNC_CONFIG``;
routes address it by the config's ``name``.
"""

import logging
import os

from fastapi import APIRouter, BackgroundTasks, HTTPException

from ...errors import FatalSyncError, RunNotFound, SyndicationError
from ...models.migration import JobState, MigrationConfig, RunStatus
from ...orchestrator import build_orchestrator
from ...services.control import MigrationControl
from ...services.ledger import MigrationLedger
from ..models import ControlResponse, RequeueRequest, RequeueResponse, StatusResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def load_config(name: str) -> MigrationConfig:
    """Load the configured migration, 404 if ``name`` does not match it."""
    path = os.environ.get("SYNC_CONFIG")
    if not path:
        raise HTTPException(status_code=500, detail="SYNC_CONFIG is not set")
    try:
        config = MigrationConfig.from_json_file(path)
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=500, detail=f"Invalid migration config: {e}")
    if config.name != name:
        raise HTTPException(status_code=404, detail="Migration not found")
    return config


def get_control(name: str) -> MigrationControl:
    config = load_config(name)
    return MigrationControl(MigrationLedger(config.database_url, config.name))


@router.get("/{name}/status", response_model=StatusResponse)
async def migration_status(name: str):
    """Get progress of a migration run."""
    try:
        summary = get_control(name).status()
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Migration has not run yet")
    except FatalSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return summary.to_dict()


@router.post("/{name}/start", response_model=ControlResponse)
async def start_migration(name: str, background_tasks: BackgroundTasks, force: bool = False):
    """
    Start (or resume) a migration pass in the background.

    A run left RUNNING by a process that died can only be restarted with
    ``force=true``; only use it once no other pass is active.
    """
    config = load_config(name)
    ledger = MigrationLedger(config.database_url, config.name)
    run = ledger.load_run()
    if run and run.status == RunStatus.RUNNING:
        if not force:
            raise HTTPException(
                status_code=409,
                detail="Migration is already running; pass force=true if its process has died",
            )
        logger.warning(f"Forcing a new pass of {name}, which was last recorded as running")

    background_tasks.add_task(run_migration_task, config)
    return ControlResponse(run_name=name, status="started")


@router.post("/{name}/pause", response_model=ControlResponse)
async def pause_migration(name: str):
    """Pause a migration before its next job."""
    get_control(name).pause()
    return ControlResponse(run_name=name, status="paused")


@router.post("/{name}/resume", response_model=ControlResponse)
async def resume_migration(name: str):
    """Resume a paused migration."""
    get_control(name).resume()
    return ControlResponse(run_name=name, status="resumed")


@router.post("/{name}/stop", response_model=ControlResponse)
async def stop_migration(name: str):
    """Stop the active pass after its in-flight jobs."""
    try:
        get_control(name).stop()
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Migration has not run yet")
    return ControlResponse(run_name=name, status="stop_requested")


@router.post("/{name}/requeue", response_model=RequeueResponse)
async def requeue_entries(name: str, data: RequeueRequest):
    """Reset failed (or stuck) keys so the next pass retries them."""
    try:
        count = get_control(name).requeue(
            state=JobState(data.state.value),
            platform=data.platform,
            record_id=data.record_id,
        )
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Migration has not run yet")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RequeueResponse(run_name=name, requeued=count)


@router.post("/{name}/reset-cursor", response_model=ControlResponse)
async def reset_cursor(name: str):
    """Restart paging from the first page on the next pass."""
    try:
        get_control(name).reset_cursor()
    except RunNotFound:
        raise HTTPException(status_code=404, detail="Migration has not run yet")
    return ControlResponse(run_name=name, status="cursor_reset")


def run_migration_task(config: MigrationConfig) -> None:
    """Background task running one pass; failures are recorded on the run."""
    try:
        result = build_orchestrator(config).run_migration()
        logger.info(f"Background run {config.name} finished: {result.status.value}")
    except SyndicationError as e:
        logger.error(f"Background run {config.name} failed: {e}")
