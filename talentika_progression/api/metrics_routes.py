"""Prometheus metrics endpoint"""
import logging
from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from talentika_progression.monitoring import metrics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/metrics")
async def metrics_endpoint():
    """Expose Prometheus metrics"""
    if not metrics.enabled:
        return Response(content="Prometheus metrics disabled", status_code=503)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
