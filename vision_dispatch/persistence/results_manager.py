from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import anyio

from vision_dispatch.config import settings
from vision_dispatch.core.types import (
    MAX_RESULTS_FILE_SIZE_BYTES,
    RESULTS_FILE_VERSION,
    AnalysisResult,
    ResultsSummary,
)

logger = logging.getLogger(__name__)

RESULTS_FILENAME = "results.json"

# One lock per results file, shared by every ResultsManager in the process.
_FILE_LOCKS: Dict[str, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _FILE_LOCKS_GUARD:
        lock = _FILE_LOCKS.get(key)
        if lock is None:
            lock = _FILE_LOCKS[key] = threading.Lock()
        return lock


@dataclass(frozen=True)
class PersistedResult:
    image_path: str
    timestamp: str
    summary: ResultsSummary
    model_id: str
    full_result: AnalysisResult

    @classmethod
    def of(cls, result: AnalysisResult) -> "PersistedResult":
        return cls(
            image_path=result.image_path,
            timestamp=result.timestamp,
            summary=ResultsSummary.of(result),
            model_id=result.model_id,
            full_result=result,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imagePath": self.image_path,
            "timestamp": self.timestamp,
            "resultsSummary": self.summary.to_dict(),
            "modelId": self.model_id,
            "fullResult": self.full_result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedResult":
        full = AnalysisResult.from_dict(data["fullResult"])
        s = data.get("resultsSummary") or {}
        return cls(
            image_path=data.get("imagePath", full.image_path),
            timestamp=data.get("timestamp", full.timestamp),
            summary=ResultsSummary(
                label_count=int(s.get("labelCount", len(full.labels))),
                top_labels=list(s.get("topLabels", [])),
                has_ocr_text=bool(s.get("hasOcrText", False)),
            ),
            model_id=data.get("modelId", full.model_id),
            full_result=full,
        )


class ResultsManager:
    """
    Append-only JSON store of analysis results for one working directory.

    Layout: <working_directory>/<results_directory>/results.json holding
    {"version": ..., "results": [...]}. When the file reaches the size cap
    it is renamed to results-<timestamp>.json before the next write.
    """

    def __init__(
        self,
        working_directory: str,
        *,
        results_directory: Optional[str] = None,
        max_file_size_bytes: int = MAX_RESULTS_FILE_SIZE_BYTES,
    ):
        self._working_directory = working_directory
        self._results_directory = results_directory or settings.results_directory
        self._max_bytes = max_file_size_bytes

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def results_dir(self) -> Path:
        return Path(self._working_directory) / self._results_directory

    def results_file(self) -> Path:
        return self.results_dir() / RESULTS_FILENAME

    # -----------------------------
    # sync file operations (run in a worker thread)
    # -----------------------------

    def _read(self) -> Dict[str, Any]:
        path = self.results_file()
        if not path.is_file():
            return {"version": RESULTS_FILE_VERSION, "results": []}
        data = json.loads(path.read_text(encoding="utf-8"))
        data.setdefault("version", RESULTS_FILE_VERSION)
        data.setdefault("results", [])
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        path = self.results_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        # unique temp name per writer, then an atomic swap
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=".results-",
            suffix=".tmp",
            delete=False,
        ) as fh:
            tmp = Path(fh.name)
            try:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            except BaseException:
                fh.close()
                tmp.unlink()
                raise
        os.replace(tmp, path)

    def _rotate_if_needed(self) -> bool:
        path = self.results_file()
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return False
        if size < self._max_bytes:
            return False

        suffix = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        rotated = path.with_name(f"results-{suffix}.json")
        n = 1
        while rotated.exists():
            rotated = path.with_name(f"results-{suffix}-{n}.json")
            n += 1
        os.replace(path, rotated)
        logger.info("results_rotated from=%s to=%s size=%d", path, rotated.name, size)
        return True

    # Each sequence below holds the lock shared by all managers of one file.

    def _append(self, persisted: PersistedResult) -> None:
        with _lock_for(self.results_file()):
            self._rotate_if_needed()
            data = self._read()
            data["results"].append(persisted.to_dict())
            self._write(data)

    def _clear(self) -> None:
        with _lock_for(self.results_file()):
            self._write({"version": RESULTS_FILE_VERSION, "results": []})

    def _rotate(self) -> bool:
        with _lock_for(self.results_file()):
            return self._rotate_if_needed()

    # -----------------------------
    # public API
    # -----------------------------

    async def process_result(self, result: AnalysisResult) -> PersistedResult:
        persisted = PersistedResult.of(result)
        await anyio.to_thread.run_sync(self._append, persisted)
        logger.info("result_persisted id=%s labels=%d", result.id, persisted.summary.label_count)
        return persisted

    async def get_history(self) -> List[PersistedResult]:
        data = await anyio.to_thread.run_sync(self._read)
        return [PersistedResult.from_dict(r) for r in data["results"]]

    async def clear_history(self) -> None:
        await anyio.to_thread.run_sync(self._clear)

    async def rotate_if_needed(self) -> bool:
        return await anyio.to_thread.run_sync(self._rotate)

    async def get_file_size(self) -> int:
        def _size() -> int:
            try:
                return self.results_file().stat().st_size
            except FileNotFoundError:
                return 0

        return await anyio.to_thread.run_sync(_size)
