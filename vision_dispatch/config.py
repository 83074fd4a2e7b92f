from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "vision-dispatch"
    log_level: str = "INFO"

    # request defaults (collaborators may override per call)
    inference_mode: str = "local"  # "local" | "cloud"
    model_id: str = "default"
    confidence_threshold: float = Field(0.5, ge=0.0, le=1.0)
    max_image_mb: int = 25

    # cloud endpoint
    cloud_endpoint_url: str = ""
    cloud_timeout_seconds: float = 30.0
    cloud_max_attempts: int = 3
    cloud_backoff_ms: List[int] = Field(default_factory=lambda: [1000, 2000])

    # local engine
    local_engine_path: str = "image-analyzer"
    local_timeout_seconds: float = 30.0

    # plugins (directory is relative to the request working directory)
    plugins_directory: str = ".image-analysis/plugins"
    plugin_timeout_seconds: Optional[float] = None

    # concurrency, per working directory
    max_concurrent_analyses: int = Field(10, ge=1)
    analysis_queue_limit: int = Field(5, ge=0)

    # persistence
    results_directory: str = ".image-analysis"
    max_results_file_mb: int = 50


settings = Settings()
