from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    """Prometheus text exposition of analysis, cloud attempt and plugin counters."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
