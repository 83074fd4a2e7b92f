from typing import Dict

from fastapi import APIRouter, Depends

from vision_dispatch.api.routes_analysis import get_pipeline
from vision_dispatch.config import settings
from vision_dispatch.pipelines.image_pipeline import ImageAnalysisPipeline

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "app": settings.app_name}


@router.get("/health/backends")
async def backends(pipeline: ImageAnalysisPipeline = Depends(get_pipeline)) -> Dict[str, bool]:
    """Liveness of both backends; probes never raise, so this is always 200."""
    return {
        "local": await pipeline.router.is_backend_available("local"),
        "cloud": await pipeline.router.is_backend_available("cloud"),
    }
