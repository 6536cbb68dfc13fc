# ABOUTME: Health check and metrics endpoints
# ABOUTME: Returns the monitor's health report and a Prometheus exposition without authentication

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from tablegate.dependencies import get_pipeline
from tablegate.services.pipeline import Pipeline

router = APIRouter()


@router.get("/health", responses={
    200: {"description": "API health report", "content": {"application/json": {"example": {"status": "healthy", "health_score": 100}}}}
})
def health_check(pipeline: Pipeline = Depends(get_pipeline)):
    """Returns API health status."""
    if not pipeline.monitor.enabled:
        return {"status": "ok"}
    return pipeline.monitor.get_health_status()


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(pipeline: Pipeline = Depends(get_pipeline)):
    """Prometheus text exposition of the monitor statistics."""
    return PlainTextResponse(pipeline.monitor.export_metrics("prometheus"), media_type=CONTENT_TYPE_LATEST)
