"""
Catalog sync trigger, control, and status endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from app.api.dependencies import require_sync_token
from app.schemas.sync import (
    SyncAcceptedResponse,
    SyncHistoryResponse,
    SyncReportResponse,
    SyncRunStatusResponse,
    SyncStopResponse,
)
from app.services.sync_orchestrator import (
    FastAPIBackgroundTaskExecutor,
    SyncOrchestrator,
    dispatch_full_sync,
    dispatch_resume,
    get_sync_orchestrator,
)

router = APIRouter(prefix="/sync", tags=["catalog-sync"])


@router.post(
    "/trigger",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SyncAcceptedResponse,
    dependencies=[Depends(require_sync_token)],
)
def trigger_full_sync(
    background_tasks: BackgroundTasks,
    sync_type: str = Query(default="manual", description="Label recorded on the run"),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncAcceptedResponse:
    _reject_if_running(orchestrator)
    dispatch_full_sync(orchestrator, FastAPIBackgroundTaskExecutor(background_tasks), sync_type)
    return SyncAcceptedResponse(action="full_sync")


@router.post(
    "/resume",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SyncAcceptedResponse,
    dependencies=[Depends(require_sync_token)],
)
def trigger_resume(
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncAcceptedResponse:
    _reject_if_running(orchestrator)
    dispatch_resume(orchestrator, FastAPIBackgroundTaskExecutor(background_tasks), force=True)
    return SyncAcceptedResponse(action="resume", active_run_id=orchestrator.active_run_id())


@router.post(
    "/stop",
    response_model=SyncStopResponse,
    dependencies=[Depends(require_sync_token)],
)
def request_stop(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncStopResponse:
    return SyncStopResponse(active_run_id=orchestrator.request_stop())


@router.get("/runs/{run_id}", response_model=SyncRunStatusResponse)
def get_run_status(
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncRunStatusResponse:
    run_status = orchestrator.get_run_status(run_id)
    if run_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run not found: {run_id}",
        )
    return SyncRunStatusResponse(**run_status)


@router.get("/runs/{run_id}/report", response_model=SyncReportResponse)
def get_run_report(
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncReportResponse:
    report = orchestrator.build_report(run_id)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run not found: {run_id}",
        )
    return SyncReportResponse(**report)


@router.get("/history", response_model=SyncHistoryResponse)
def get_history(
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncHistoryResponse:
    return SyncHistoryResponse(runs=orchestrator.history())


def _reject_if_running(orchestrator: SyncOrchestrator) -> None:
    if orchestrator.is_running():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A catalog sync is already running.",
        )
