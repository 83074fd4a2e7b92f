from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------
# Request
# ---------

class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    imagePath: str = Field(..., min_length=1)
    workingDirectory: str = Field(..., min_length=1)
    modelId: Optional[str] = None
    mode: Optional[Literal["local", "cloud"]] = None
    plugins: List[str] = Field(default_factory=list)
    confidenceThreshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    persist: bool = True


# ---------
# Result
# ---------

class BoundingBoxOut(BaseModel):
    x: int
    y: int
    width: int
    height: int


class DetectionLabelOut(BaseModel):
    label: str
    confidence: float
    boundingBox: Optional[BoundingBoxOut] = None


class AnalysisResultOut(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    imagePath: str
    timestamp: str
    modelId: str
    inferenceMode: Literal["local", "cloud"]
    duration: int
    labels: List[DetectionLabelOut] = Field(default_factory=list)
    ocrText: Optional[str] = None
    rawResponse: Optional[Any] = None


class PluginLogEntryOut(BaseModel):
    pluginId: str
    success: bool
    duration: int
    error: Optional[str] = None


class AnalyzeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    result: AnalysisResultOut
    pluginLog: List[PluginLogEntryOut] = Field(default_factory=list)


# ---------
# History
# ---------

class ResultsSummaryOut(BaseModel):
    labelCount: int
    topLabels: List[str] = Field(default_factory=list)
    hasOcrText: bool


class PersistedResultOut(BaseModel):
    imagePath: str
    timestamp: str
    resultsSummary: ResultsSummaryOut
    modelId: str
    fullResult: AnalysisResultOut


class HistoryResponse(BaseModel):
    results: List[PersistedResultOut] = Field(default_factory=list)


# ---------
# Errors (global payload)
# ---------

class ErrorBody(BaseModel):
    code: str
    message: str
    request_id: Optional[str] = None
    recovery_hint: Optional[str] = None
    retryable: Optional[bool] = None


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: ErrorBody
