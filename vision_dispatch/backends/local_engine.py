"""
Subprocess adapter for a locally installed analysis engine.

The engine is invoked as::

    <binary> --image <path> --model <id> --output json

with the arguments passed as a vector (no shell). stdout must carry one
JSON object; a top-level "error" string signals failure.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Optional

import anyio
from anyio.abc import ByteReceiveStream

from vision_dispatch.core.engine_schema import parse_engine_payload
from vision_dispatch.core.errors import AnalysisError, ErrorDetails, ErrorKind
from vision_dispatch.core.types import AnalysisResult, new_analysis_id, utc_timestamp

logger = logging.getLogger(__name__)

VERSION_CHECK_TIMEOUT_SECONDS = 5.0
TERMINATE_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class LocalEngineConfig:
    binary_path: str = "image-analyzer"
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class ProcessOutcome:
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool


def build_cli_arguments(image_path: str, model_id: str) -> List[str]:
    return ["--image", image_path, "--model", model_id, "--output", "json"]


async def _drain(stream: Optional[ByteReceiveStream], sink: List[bytes]) -> None:
    if stream is None:
        return
    async for chunk in stream:
        sink.append(chunk)


async def run_engine_process(command: List[str], timeout_seconds: float) -> ProcessOutcome:
    """
    Run a command, capturing stdout/stderr separately, bounded by a wall clock.

    The bound covers both the exit and the draining of both pipes, so a
    background child that keeps stdout open cannot stretch it. On timeout
    the process gets SIGTERM, then SIGKILL if it outlives the grace period.
    Raises OSError when the executable cannot be spawned.
    """
    out: List[bytes] = []
    err: List[bytes] = []

    process = await anyio.open_process(command)
    async with process:
        with anyio.move_on_after(timeout_seconds) as scope:
            async with anyio.create_task_group() as tg:
                tg.start_soon(_drain, process.stdout, out)
                tg.start_soon(_drain, process.stderr, err)
                await process.wait()

        if scope.cancelled_caught and process.returncode is None:
            process.terminate()
            with anyio.move_on_after(TERMINATE_GRACE_SECONDS):
                await process.wait()
            if process.returncode is None:
                # reaped when the process context closes the pipes
                process.kill()

    return ProcessOutcome(
        returncode=process.returncode,
        stdout=b"".join(out).decode("utf-8", errors="replace"),
        stderr=b"".join(err).decode("utf-8", errors="replace"),
        timed_out=scope.cancelled_caught,
    )


class LocalEngineAdapter:
    def __init__(self, config: Optional[LocalEngineConfig] = None):
        self._config = config or LocalEngineConfig()

    @property
    def config(self) -> LocalEngineConfig:
        return self._config

    def update_config(self, **changes: Any) -> LocalEngineConfig:
        self._config = replace(self._config, **changes)
        return self._config

    def parse_result(self, stdout: str, image_path: str, model_id: str, duration_ms: int) -> AnalysisResult:
        try:
            payload = parse_engine_payload(stdout.strip())
        except ValueError as e:
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                f"Failed to parse local engine output as JSON: {stdout[:100]}",
                ErrorDetails(model_id=model_id),
            ) from e

        err_msg = payload.error_message()
        if err_msg is not None:
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                f"Local engine returned error: {err_msg}",
                ErrorDetails(model_id=model_id),
            )

        return AnalysisResult(
            id=new_analysis_id(),
            image_path=image_path,
            timestamp=utc_timestamp(),
            model_id=payload.modelId or model_id,
            mode="local",
            duration_ms=duration_ms,
            labels=tuple(payload.detections()),
            ocr_text=payload.ocrText,
            raw_response=payload.model_dump(exclude_none=True),
        )

    async def analyze(self, image_path: str, model_id: str) -> AnalysisResult:
        config = self._config
        details = ErrorDetails(model_id=model_id)

        if not Path(image_path).exists():
            raise AnalysisError(
                ErrorKind.FILE_NOT_FOUND,
                f"Image file not found: {image_path}",
                details,
            )

        command = [config.binary_path, *build_cli_arguments(image_path, model_id)]
        start = time.perf_counter()

        try:
            outcome = await run_engine_process(command, config.timeout_seconds)
        except FileNotFoundError as e:
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                f"Local analysis binary not found: {config.binary_path}. "
                "Please ensure the binary is installed and available in PATH.",
                details,
            ) from e
        except OSError as e:
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                f"Failed to execute local engine: {e}",
                replace(details, stack_trace=repr(e)),
            ) from e

        duration_ms = int((time.perf_counter() - start) * 1000)

        if outcome.timed_out:
            logger.warning(
                "local_timeout binary=%s timeout_s=%s model=%s",
                config.binary_path,
                config.timeout_seconds,
                model_id,
            )
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_TIMEOUT,
                f"Local engine analysis timed out after {config.timeout_seconds}s",
                details,
            )

        if outcome.returncode != 0:
            stderr = outcome.stderr.strip()
            logger.warning("local_exit_nonzero code=%s model=%s", outcome.returncode, model_id)
            raise AnalysisError(
                ErrorKind.LOCAL_ENGINE_NOT_FOUND,
                f"Local engine exited with code {outcome.returncode}" + (f": {stderr}" if stderr else ""),
                details,
            )

        result = self.parse_result(outcome.stdout, image_path, model_id, duration_ms)
        logger.info(
            "local_ok labels=%d duration_ms=%d model=%s",
            len(result.labels),
            duration_ms,
            result.model_id,
        )
        return result

    async def is_available(self) -> bool:
        binary = self._config.binary_path
        try:
            outcome = await run_engine_process([binary, "--version"], VERSION_CHECK_TIMEOUT_SECONDS)
        except OSError:
            return False
        return not outcome.timed_out and outcome.returncode == 0
