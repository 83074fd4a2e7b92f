from __future__ import annotations

import json
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vision_dispatch.core.types import BoundingBox, DetectionLabel


class EngineBoundingBox(BaseModel):
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)


class EngineLabel(BaseModel):
    label: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    boundingBox: Optional[EngineBoundingBox] = None

    def to_detection(self) -> DetectionLabel:
        box = self.boundingBox
        return DetectionLabel(
            label=self.label,
            confidence=self.confidence,
            bounding_box=(
                BoundingBox(x=box.x, y=box.y, width=box.width, height=box.height)
                if box is not None
                else None
            ),
        )


class EngineErrorBody(BaseModel):
    code: Optional[str] = None
    message: str = ""


class EngineResponse(BaseModel):
    """
    Shape shared by the cloud endpoint body and the local engine stdout.
    """
    model_config = ConfigDict(extra="ignore")

    labels: List[EngineLabel] = Field(default_factory=list)
    ocrText: Optional[str] = None
    modelId: Optional[str] = None
    error: Optional[Union[str, EngineErrorBody]] = None

    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, str):
            return self.error
        return self.error.message or self.error.code or "unknown error"

    def detections(self) -> List[DetectionLabel]:
        return [lbl.to_detection() for lbl in self.labels]


def parse_engine_payload(text: str) -> EngineResponse:
    """
    Parse a backend payload.

    Raises ValueError on invalid JSON or a body that does not match the
    schema; adapters translate that into their own error kind.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")

    # An error body wins over whatever else the backend sent.
    if data.get("error"):
        try:
            return EngineResponse.model_validate({"error": data["error"]})
        except ValidationError:
            return EngineResponse(error=str(data["error"]))

    try:
        return EngineResponse.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"JSON does not match schema: {e}") from e
