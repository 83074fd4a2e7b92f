import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query

from vision_dispatch.api.schemas import AnalyzeRequest, AnalyzeResponse, HistoryResponse
from vision_dispatch.config import settings
from vision_dispatch.persistence.results_manager import ResultsManager
from vision_dispatch.pipelines.image_pipeline import ImageAnalysisPipeline, create_pipeline

router = APIRouter(tags=["analysis"])

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_pipeline() -> ImageAnalysisPipeline:
    # built once per process; adapters only hold immutable config
    return create_pipeline()


def get_results_manager(
    workingDirectory: str = Query(..., min_length=1),
) -> ResultsManager:
    return ResultsManager(
        workingDirectory,
        results_directory=settings.results_directory,
        max_file_size_bytes=settings.max_results_file_mb * 1024 * 1024,
    )


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    body: AnalyzeRequest,
    pipeline: ImageAnalysisPipeline = Depends(get_pipeline),
) -> AnalyzeResponse:
    try:
        outcome = await pipeline.run(
            body.imagePath,
            body.workingDirectory,
            model_id=body.modelId,
            mode=body.mode,
            plugin_ids=body.plugins,
            confidence_threshold=body.confidenceThreshold,
            persist=body.persist,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"code": "invalid_parameters", "message": str(e)})

    return AnalyzeResponse.model_validate(
        {
            "result": outcome.result.to_dict(),
            "pluginLog": [entry.to_dict() for entry in outcome.plugin_log],
        }
    )


@router.get("/results", response_model=HistoryResponse)
async def get_results(manager: ResultsManager = Depends(get_results_manager)) -> HistoryResponse:
    history = await manager.get_history()
    return HistoryResponse.model_validate({"results": [r.to_dict() for r in history]})


@router.delete("/results", status_code=204)
async def clear_results(manager: ResultsManager = Depends(get_results_manager)) -> None:
    await manager.clear_history()
    logger.info("history_cleared working_directory=%s", manager.working_directory)
