"""Queue monitoring route.

Learn: Read-only view of the job queue for dashboards and on-call. The
counts come from JobQueue.metrics(); `connections` is the number of
WebSockets attached to this API process.
"""

from fastapi import APIRouter, Request

from vaultsync.schemas.assets import QueueMetrics

router = APIRouter()


@router.get("/queue/metrics", response_model=QueueMetrics)
async def queue_metrics(request: Request):
    """Job counts by state."""
    queue = request.app.state.queue
    counts = await queue.metrics()
    return QueueMetrics(
        queue=queue.name,
        connections=request.app.state.connections.connection_count,
        **counts,
    )
