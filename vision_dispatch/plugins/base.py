from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field

from vision_dispatch.core.types import AnalysisResult


ProcessFn = Callable[[str, AnalysisResult], Union[AnalysisResult, Awaitable[AnalysisResult]]]


class ImageAnalysisPlugin(Protocol):
    """
    Post-processing step applied to a result after inference.

    process_image receives the original image path and the current
    accumulated result and returns the next one. It may be a plain function
    or a coroutine function.
    """
    id: str
    name: str
    version: str

    def process_image(self, image_path: str, result: AnalysisResult) -> Any:
        ...


@dataclass(frozen=True)
class FunctionPlugin:
    """Adapts a bare callable (or a module loaded from disk) to ImageAnalysisPlugin."""
    id: str
    name: str
    version: str
    process: ProcessFn = field(repr=False)

    def process_image(self, image_path: str, result: AnalysisResult) -> Any:
        return self.process(image_path, result)


class PluginManifest(BaseModel):
    """
    plugin.json next to each plugin module.

    id/name/version override the module attributes of the same name when set.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    version: Optional[str] = None
    main: str = Field("index", min_length=1)


@dataclass(frozen=True)
class PluginValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0


def validate_plugin_interface(plugin: Any) -> PluginValidationResult:
    if plugin is None:
        return PluginValidationResult(valid=False, errors=["Plugin must be an object"])

    errors: List[str] = []
    for attr in ("id", "name", "version"):
        if not _non_empty_str(getattr(plugin, attr, None)):
            errors.append(f"Plugin must have a non-empty '{attr}' string property")

    if not callable(getattr(plugin, "process_image", None)):
        errors.append("Plugin must have a 'process_image' function")

    return PluginValidationResult(valid=not errors, errors=errors)
