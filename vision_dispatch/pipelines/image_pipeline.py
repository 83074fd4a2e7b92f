from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import anyio

from vision_dispatch.config import Settings, settings as default_settings
from vision_dispatch.backends.factory import create_router
from vision_dispatch.core.types import (
    INFERENCE_MODES,
    AnalysisRequest,
    AnalysisResult,
    PluginExecutionLogEntry,
)
from vision_dispatch.persistence.results_manager import PersistedResult, ResultsManager
from vision_dispatch.pipelines.concurrency import ConcurrencyLimits, ConcurrencyManager
from vision_dispatch.pipelines.router import AnalysisRouter
from vision_dispatch.plugins.loader import PluginLoader
from vision_dispatch.plugins.sources import DirectoryPluginSource, PluginSource
from vision_dispatch.preprocessing.image_validator import ValidationIssue, validate_image

logger = logging.getLogger(__name__)


class ImageValidationFailed(Exception):
    """Raised before routing when the image is missing, too large or not a supported type."""

    def __init__(self, issue: ValidationIssue):
        super().__init__(issue.message)
        self.issue = issue


@dataclass(frozen=True)
class PipelineOutcome:
    result: AnalysisResult
    plugin_log: List[PluginExecutionLogEntry] = field(default_factory=list)
    persisted: Optional[PersistedResult] = None


class ImageAnalysisPipeline:
    """
    Orchestrates one analysis end to end:
    validate -> route -> plugins -> persist.

    Everything after validation holds a slot from the concurrency manager,
    keyed by working directory.

    Each step is a one-shot call; a routing failure propagates as
    AnalysisError, plugin failures only show up in plugin_log.
    """

    def __init__(
        self,
        router: AnalysisRouter,
        plugin_source: PluginSource,
        *,
        plugin_timeout_seconds: Optional[float] = None,
        concurrency: Optional[ConcurrencyManager] = None,
        results_manager_factory: Callable[[str], ResultsManager] = ResultsManager,
        max_image_mb: float = 25,
        default_model_id: str = "default",
        default_mode: str = "local",
        default_confidence_threshold: float = 0.5,
    ):
        self._router = router
        self._plugin_source = plugin_source
        self._plugin_timeout = plugin_timeout_seconds
        self._concurrency = concurrency or ConcurrencyManager()
        self._results_manager_factory = results_manager_factory
        self._max_image_mb = max_image_mb
        self._default_model_id = default_model_id
        self._default_mode = default_mode
        self._default_threshold = default_confidence_threshold

    @property
    def router(self) -> AnalysisRouter:
        return self._router

    @property
    def concurrency(self) -> ConcurrencyManager:
        return self._concurrency

    async def run(
        self,
        image_path: str,
        working_directory: str,
        *,
        model_id: Optional[str] = None,
        mode: Optional[str] = None,
        plugin_ids: Sequence[str] = (),
        confidence_threshold: Optional[float] = None,
        persist: bool = True,
    ) -> PipelineOutcome:
        m = (mode or self._default_mode).strip().lower()
        if m not in INFERENCE_MODES:
            raise ValueError(f"mode must be one of {', '.join(INFERENCE_MODES)}")

        validation = await anyio.to_thread.run_sync(validate_image, image_path, self._max_image_mb)
        if not validation.valid:
            assert validation.error is not None
            logger.info("validation_failed code=%s path=%s", validation.error.code, image_path)
            raise ImageValidationFailed(validation.error)

        request = AnalysisRequest(
            image_path=image_path,
            mime_type=validation.mime_type or "",
            file_size=validation.file_size or 0,
            model_id=model_id or self._default_model_id,
            confidence_threshold=(
                self._default_threshold if confidence_threshold is None else confidence_threshold
            ),
            mode=m,  # type: ignore[arg-type]
            working_directory=working_directory,
        )

        async with self._concurrency.slot(working_directory):
            result = await self._router.route(request)

            plugin_log: List[PluginExecutionLogEntry] = []
            if plugin_ids:
                # one loader per run: its execution log belongs to this request only
                loader = PluginLoader(self._plugin_source, self._plugin_timeout)
                result = await loader.execute_plugins(result, list(plugin_ids), working_directory)
                plugin_log = loader.execution_log

            persisted = None
            if persist:
                persisted = await self._results_manager_factory(working_directory).process_result(result)

        logger.info(
            "pipeline_ok id=%s mode=%s labels=%d plugins=%d plugin_failures=%d",
            result.id,
            m,
            len(result.labels),
            len(plugin_log),
            sum(1 for e in plugin_log if not e.success),
        )
        return PipelineOutcome(result=result, plugin_log=plugin_log, persisted=persisted)


def create_pipeline(cfg: Settings = default_settings) -> ImageAnalysisPipeline:
    max_bytes = cfg.max_results_file_mb * 1024 * 1024

    def _results_manager(working_directory: str) -> ResultsManager:
        return ResultsManager(
            working_directory,
            results_directory=cfg.results_directory,
            max_file_size_bytes=max_bytes,
        )

    return ImageAnalysisPipeline(
        router=create_router(cfg),
        plugin_source=DirectoryPluginSource(cfg.plugins_directory),
        plugin_timeout_seconds=cfg.plugin_timeout_seconds,
        concurrency=ConcurrencyManager(
            ConcurrencyLimits(
                max_concurrent=cfg.max_concurrent_analyses,
                queue_limit=cfg.analysis_queue_limit,
            )
        ),
        results_manager_factory=_results_manager,
        max_image_mb=cfg.max_image_mb,
        default_model_id=cfg.model_id,
        default_mode=cfg.inference_mode,
        default_confidence_threshold=cfg.confidence_threshold,
    )
