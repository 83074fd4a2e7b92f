from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Literal, Optional, Tuple


InferenceMode = Literal["local", "cloud"]
INFERENCE_MODES = ("local", "cloud")

SUPPORTED_MIME_TYPES: Tuple[str, ...] = (
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
)

MAX_IMAGE_SIZE_BYTES = 25 * 1024 * 1024
MAX_RESULTS_FILE_SIZE_BYTES = 50 * 1024 * 1024
RESULTS_FILE_VERSION = "1.0.0"


def new_analysis_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# -----------------------------
# Detections
# -----------------------------

@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoundingBox":
        return cls(
            x=int(data["x"]),
            y=int(data["y"]),
            width=int(data["width"]),
            height=int(data["height"]),
        )


@dataclass(frozen=True)
class DetectionLabel:
    label: str
    confidence: float
    bounding_box: Optional[BoundingBox] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"label": self.label, "confidence": self.confidence}
        if self.bounding_box is not None:
            payload["boundingBox"] = self.bounding_box.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionLabel":
        box = data.get("boundingBox")
        return cls(
            label=str(data["label"]),
            confidence=float(data["confidence"]),
            bounding_box=BoundingBox.from_dict(box) if box is not None else None,
        )


# -----------------------------
# Request / result
# -----------------------------

@dataclass(frozen=True)
class AnalysisRequest:
    """
    Immutable input to routing.

    Built by the pipeline once the image has passed validation, so mime_type
    and file_size always describe a file that existed at validation time.
    """
    image_path: str
    mime_type: str
    file_size: int
    model_id: str
    confidence_threshold: float
    mode: InferenceMode
    working_directory: str


@dataclass(frozen=True)
class AnalysisResult:
    """
    Normalized output of either backend.

    labels keep the order the backend reported them in. The result is never
    mutated in place: the router and plugins derive new values with
    dataclasses.replace (see with_changes).
    """
    id: str
    image_path: str
    timestamp: str
    model_id: str
    mode: InferenceMode
    duration_ms: int
    labels: Tuple[DetectionLabel, ...] = ()
    ocr_text: Optional[str] = None
    raw_response: Optional[Any] = None

    def with_changes(self, **changes: Any) -> "AnalysisResult":
        if "labels" in changes:
            changes["labels"] = tuple(changes["labels"])
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "imagePath": self.image_path,
            "timestamp": self.timestamp,
            "modelId": self.model_id,
            "inferenceMode": self.mode,
            "duration": self.duration_ms,
            "labels": [lbl.to_dict() for lbl in self.labels],
        }
        if self.ocr_text is not None:
            payload["ocrText"] = self.ocr_text
        if self.raw_response is not None:
            payload["rawResponse"] = self.raw_response
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        return cls(
            id=str(data["id"]),
            image_path=str(data.get("imagePath", "")),
            timestamp=str(data["timestamp"]),
            model_id=str(data.get("modelId", "")),
            mode=data.get("inferenceMode", "local"),
            duration_ms=int(data.get("duration", 0)),
            labels=tuple(DetectionLabel.from_dict(x) for x in data.get("labels") or []),
            ocr_text=data.get("ocrText"),
            raw_response=data.get("rawResponse"),
        )


# -----------------------------
# Configuration values
# -----------------------------

@dataclass(frozen=True)
class RetryConfig:
    """
    Retry policy for the cloud adapter.

    max_attempts counts the first call. backoff_ms[i] is the delay after
    failed attempt i; indexes past the end reuse the last value.
    """
    max_attempts: int = 3
    backoff_ms: Tuple[int, ...] = (1000, 2000)
    retryable_kinds: FrozenSet[str] = frozenset({"ENDPOINT_ERROR_5XX", "ENDPOINT_UNREACHABLE"})

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        object.__setattr__(self, "backoff_ms", tuple(self.backoff_ms))
        object.__setattr__(self, "retryable_kinds", frozenset(str(k) for k in self.retryable_kinds))

    def delay_seconds(self, attempt_index: int) -> float:
        if not self.backoff_ms:
            return 0.0
        idx = min(attempt_index, len(self.backoff_ms) - 1)
        return self.backoff_ms[idx] / 1000.0


DEFAULT_CLOUD_RETRY_CONFIG = RetryConfig()


@dataclass(frozen=True)
class PluginExecutionLogEntry:
    plugin_id: str
    success: bool
    duration_ms: int
    error: Optional[str] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "pluginId": self.plugin_id,
            "success": self.success,
            "duration": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ResultsSummary:
    label_count: int
    top_labels: List[str] = field(default_factory=list)
    has_ocr_text: bool = False

    @classmethod
    def of(cls, result: AnalysisResult) -> "ResultsSummary":
        ranked = sorted(result.labels, key=lambda lbl: lbl.confidence, reverse=True)
        return cls(
            label_count=len(result.labels),
            top_labels=[lbl.label for lbl in ranked[:5]],
            has_ocr_text=bool(result.ocr_text),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "labelCount": self.label_count,
            "topLabels": list(self.top_labels),
            "hasOcrText": self.has_ocr_text,
        }
