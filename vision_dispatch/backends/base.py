from __future__ import annotations

from typing import Protocol

from vision_dispatch.core.types import AnalysisResult


class CloudBackend(Protocol):
    """
    Contract for the remote backend.

    The image travels as base64 text, so implementations never see the
    file path; the router fills image_path in afterwards.
    """

    async def analyze(self, image_data: str, model_id: str) -> AnalysisResult:
        ...

    async def is_available(self) -> bool:
        ...


class LocalBackend(Protocol):
    """
    Contract for the locally spawned engine.

    Implementations:
    - LocalEngineAdapter (subprocess)
    - fakes in tests
    """

    async def analyze(self, image_path: str, model_id: str) -> AnalysisResult:
        ...

    async def is_available(self) -> bool:
        ...
