"""Pydantic schemas for the asset analysis routes.

Learn: Responses only. Neither route takes a body: the asset id is in the
path and the owner comes from the Bearer token.
"""

from pydantic import BaseModel


class AnalysisQueued(BaseModel):
    job_id: str
    asset_id: str
    status: str = "processing"


class QueueMetrics(BaseModel):
    queue: str
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    connections: int = 0
