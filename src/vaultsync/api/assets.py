"""Asset analysis routes.

Learn: Routes translate HTTP to AssetAnalysisService calls and nothing
more. Domain errors (NotFoundError, OwnershipError, InvalidTransitionError,
QueueUnavailableError) are mapped to status codes by the exception
handlers registered in main.py, so no handler here catches them.

202 Accepted: the analysis runs later in a worker. The client learns the
outcome from the `asset_processed` WebSocket event, not from this response.
"""

from fastapi import APIRouter, Depends, Request

from vaultsync.auth.dependencies import CurrentIdentity, get_current_identity
from vaultsync.schemas.assets import AnalysisQueued
from vaultsync.services.assets import AssetAnalysisService

router = APIRouter()


def _asset_svc(request: Request) -> AssetAnalysisService:
    return AssetAnalysisService(request.app.state.assets, request.app.state.queue)


@router.post("/assets/{asset_id}/analyze", response_model=AnalysisQueued, status_code=202)
async def request_analysis(
    asset_id: str,
    identity: CurrentIdentity = Depends(get_current_identity),
    svc: AssetAnalysisService = Depends(_asset_svc),
):
    """Move a draft asset to processing and queue its analysis."""
    job_id = await svc.request_analysis(asset_id, identity.owner_id)
    return AnalysisQueued(job_id=job_id, asset_id=asset_id)


@router.post("/assets/{asset_id}/retry", response_model=AnalysisQueued, status_code=202)
async def retry_analysis(
    asset_id: str,
    identity: CurrentIdentity = Depends(get_current_identity),
    svc: AssetAnalysisService = Depends(_asset_svc),
):
    """Queue a fresh analysis for a failed or partial asset."""
    job_id = await svc.retry_analysis(asset_id, identity.owner_id)
    return AnalysisQueued(job_id=job_id, asset_id=asset_id)
