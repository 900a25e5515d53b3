from fastapi import APIRouter, Depends, HTTPException, status

from engagement.core.errors import TransientDependencyError
from engagement.core.security import get_scheduler_principal
from engagement.jobs.lease_reaper import run_maintenance
from engagement.schemas.dispatch import DispatchSummaryOut, MaintenanceSummaryOut
from engagement.services.container import get_services

router = APIRouter()


@router.post("", response_model=DispatchSummaryOut)
async def dispatch_due_jobs(
    principal=Depends(get_scheduler_principal),
    services=Depends(get_services),
) -> DispatchSummaryOut:
    try:
        principal.require_scopes({"dispatch:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        summary = await services.dispatcher.run_once()
    except TransientDependencyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DispatchSummaryOut(
        claimed=summary.claimed,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
        retried=summary.retried,
        elapsed_ms=summary.elapsed_ms,
    )


@router.post("/maintenance", response_model=MaintenanceSummaryOut)
async def run_job_maintenance(
    principal=Depends(get_scheduler_principal),
    services=Depends(get_services),
) -> MaintenanceSummaryOut:
    try:
        principal.require_scopes({"maintenance:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    settings = services.settings
    try:
        summary = await run_maintenance(
            services.context.repository,
            stale_after_seconds=settings.stale_processing_after_seconds,
            retention_days=settings.job_retention_days,
            batch_size=settings.maintenance_batch_size,
            now=services.context.now(),
        )
    except TransientDependencyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return MaintenanceSummaryOut(requeued=summary.requeued, purged=summary.purged)
