from __future__ import annotations

import base64
import logging
import time
from pathlib import Path
from typing import Optional

import anyio

from vision_dispatch.backends.base import CloudBackend, LocalBackend
from vision_dispatch.core.errors import AnalysisError, ErrorDetails, ErrorKind
from vision_dispatch.core.types import AnalysisRequest, AnalysisResult, InferenceMode
from vision_dispatch.observability.metrics import ANALYSIS_REQUESTS_TOTAL, ANALYSIS_SECONDS

logger = logging.getLogger(__name__)


def _read_base64(path: str) -> str:
    return base64.b64encode(Path(path).read_bytes()).decode("ascii")


class AnalysisRouter:
    """
    Sends one request to the backend its mode names.

    Flow: file exists -> backend alive -> delegate -> (cloud) stamp image_path.
    There is no fallback to the other backend and no retry here; the cloud
    adapter owns its own retry policy.
    """

    def __init__(self, local_adapter: LocalBackend, cloud_adapter: CloudBackend):
        self._local = local_adapter
        self._cloud = cloud_adapter
        # observability only; never consulted for routing
        self._last_used_mode: Optional[InferenceMode] = None

    @property
    def last_used_mode(self) -> Optional[InferenceMode]:
        return self._last_used_mode

    def set_local_adapter(self, adapter: LocalBackend) -> None:
        self._local = adapter

    def set_cloud_adapter(self, adapter: CloudBackend) -> None:
        self._cloud = adapter

    async def is_backend_available(self, mode: InferenceMode) -> bool:
        if mode == "cloud":
            return await self._cloud.is_available()
        return await self._local.is_available()

    async def route(self, request: AnalysisRequest) -> AnalysisResult:
        mode = request.mode
        details = ErrorDetails(model_id=request.model_id)

        if mode not in ("local", "cloud"):
            raise ValueError(f"Unsupported inference mode: {mode!r}")

        if not Path(request.image_path).exists():
            ANALYSIS_REQUESTS_TOTAL.labels(mode=mode, result="file_not_found").inc()
            raise AnalysisError(
                ErrorKind.FILE_NOT_FOUND,
                f"Image file not found: {request.image_path}",
                details,
            )

        if not await self.is_backend_available(mode):
            ANALYSIS_REQUESTS_TOTAL.labels(mode=mode, result="unavailable").inc()
            if mode == "cloud":
                raise AnalysisError(
                    ErrorKind.ENDPOINT_UNREACHABLE,
                    "Cloud endpoint is not available. Please check your configuration.",
                    details,
                )
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                "Local engine is not available. Please check your configuration.",
                details,
            )

        self._last_used_mode = mode
        t0 = time.perf_counter()

        try:
            if mode == "cloud":
                try:
                    image_data = await anyio.to_thread.run_sync(_read_base64, request.image_path)
                except OSError as e:
                    raise AnalysisError(
                        ErrorKind.FILE_NOT_FOUND,
                        f"Failed to read image file: {e}",
                        details,
                    ) from e
                result = await self._cloud.analyze(image_data, request.model_id)
                # the cloud adapter only ever sees base64 bytes
                result = result.with_changes(image_path=request.image_path)
            else:
                result = await self._local.analyze(request.image_path, request.model_id)
        except AnalysisError as e:
            ANALYSIS_REQUESTS_TOTAL.labels(mode=mode, result=e.kind.value.lower()).inc()
            logger.warning("route_failed mode=%s kind=%s msg=%s", mode, e.kind.value, e.message)
            raise
        finally:
            ANALYSIS_SECONDS.labels(mode=mode).observe(time.perf_counter() - t0)

        ANALYSIS_REQUESTS_TOTAL.labels(mode=mode, result="ok").inc()
        logger.info(
            "route_ok mode=%s model=%s labels=%d duration_ms=%d",
            mode,
            result.model_id,
            len(result.labels),
            result.duration_ms,
        )
        return result
