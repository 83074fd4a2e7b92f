from __future__ import annotations

from vision_dispatch.config import Settings, settings as default_settings
from vision_dispatch.backends.cloud_endpoint import CloudEndpointAdapter, CloudEndpointConfig
from vision_dispatch.backends.local_engine import LocalEngineAdapter, LocalEngineConfig
from vision_dispatch.core.types import DEFAULT_CLOUD_RETRY_CONFIG, RetryConfig
from vision_dispatch.pipelines.router import AnalysisRouter


def create_cloud_adapter(cfg: Settings = default_settings) -> CloudEndpointAdapter:
    retry = RetryConfig(
        max_attempts=cfg.cloud_max_attempts,
        backoff_ms=tuple(cfg.cloud_backoff_ms),
        retryable_kinds=DEFAULT_CLOUD_RETRY_CONFIG.retryable_kinds,
    )
    return CloudEndpointAdapter(
        CloudEndpointConfig(
            endpoint_url=cfg.cloud_endpoint_url,
            timeout_seconds=cfg.cloud_timeout_seconds,
            retry=retry,
        )
    )


def create_local_adapter(cfg: Settings = default_settings) -> LocalEngineAdapter:
    return LocalEngineAdapter(
        LocalEngineConfig(
            binary_path=cfg.local_engine_path,
            timeout_seconds=cfg.local_timeout_seconds,
        )
    )


def create_router(cfg: Settings = default_settings) -> AnalysisRouter:
    return AnalysisRouter(
        local_adapter=create_local_adapter(cfg),
        cloud_adapter=create_cloud_adapter(cfg),
    )
