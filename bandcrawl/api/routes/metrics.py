from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from bandcrawl.services.metrics_service import MetricsService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Metrics"])


def get_metrics_service(request: Request) -> MetricsService:
    return request.app.state.metrics_service


@router.post("/metrics", response_class=PlainTextResponse)
async def ingest_metrics(
    request: Request,
    service: MetricsService = Depends(get_metrics_service),
) -> PlainTextResponse:
    """Ingest a batch of analytics beacons.

    Beacons are fire-and-forget: the endpoint answers ``200 OK`` whether or
    not the payload was valid, so clients never retry.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    try:
        service.ingest(payload)
    except Exception:
        logger.exception("metrics.ingestion_failed")

    return PlainTextResponse("OK", status_code=200)
