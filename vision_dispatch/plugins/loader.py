"""
Ordered, fault-isolated execution of post-processing plugins.

Resilience policy:
- One plugin failure must NOT fail the pipeline; execute_plugins always
  returns a result.
- A failing plugin's output is discarded; the accumulator keeps the last
  successful value and the next plugin starts from it.
- Unknown ids are logged as failed entries and skipped.
"""

from __future__ import annotations

import contextlib
import inspect
import logging
import time
import traceback
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import anyio

from vision_dispatch.core.errors import AnalysisError, ErrorDetails, ErrorKind
from vision_dispatch.core.types import AnalysisResult, PluginExecutionLogEntry
from vision_dispatch.observability.metrics import PLUGIN_EXECUTIONS_TOTAL
from vision_dispatch.plugins.base import FunctionPlugin, ImageAnalysisPlugin
from vision_dispatch.plugins.sources import PluginSource

logger = logging.getLogger(__name__)

# Contained per plugin. Cancellation and KeyboardInterrupt are not.
PLUGIN_FAILURES = (Exception, SystemExit)


@dataclass(frozen=True)
class PluginExecutionResult:
    plugin_id: str
    success: bool
    duration_ms: int = 0
    result: Optional[AnalysisResult] = None
    error: Optional[AnalysisError] = None

    def log_entry(self) -> PluginExecutionLogEntry:
        if self.error is None:
            return PluginExecutionLogEntry(self.plugin_id, self.success, self.duration_ms)
        return PluginExecutionLogEntry(
            plugin_id=self.plugin_id,
            success=False,
            duration_ms=self.duration_ms,
            error=self.error.message,
            stack_trace=self.error.details.stack_trace,
        )


def _is_coroutine_plugin(plugin: ImageAnalysisPlugin) -> bool:
    if isinstance(plugin, FunctionPlugin):
        return inspect.iscoroutinefunction(plugin.process)
    return inspect.iscoroutinefunction(plugin.process_image)


class PluginLoader:
    def __init__(self, source: PluginSource, plugin_timeout_seconds: Optional[float] = None):
        self._source = source
        self._timeout = plugin_timeout_seconds
        self._execution_log: List[PluginExecutionLogEntry] = []

    @property
    def source(self) -> PluginSource:
        return self._source

    @property
    def execution_log(self) -> List[PluginExecutionLogEntry]:
        return list(self._execution_log)

    def clear_execution_log(self) -> None:
        self._execution_log = []

    async def _call(self, plugin: ImageAnalysisPlugin, image_path: str, result: AnalysisResult) -> AnalysisResult:
        scope = anyio.fail_after(self._timeout) if self._timeout else contextlib.nullcontext()
        with scope:
            if _is_coroutine_plugin(plugin):
                out: Any = plugin.process_image(image_path, result)
            else:
                # sync plugins must not block the event loop
                out = await anyio.to_thread.run_sync(
                    plugin.process_image, image_path, result, abandon_on_cancel=True
                )
            if inspect.isawaitable(out):
                out = await out

        if not isinstance(out, AnalysisResult):
            raise TypeError(f"process_image returned {type(out).__name__}, expected AnalysisResult")
        return out

    async def execute_single_plugin(
        self,
        plugin: ImageAnalysisPlugin,
        image_path: str,
        result: AnalysisResult,
    ) -> PluginExecutionResult:
        """Run one plugin; a failure comes back as an unsuccessful result, never raised."""
        t0 = time.perf_counter()
        try:
            processed = await self._call(plugin, image_path, result)
        except PLUGIN_FAILURES as e:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            message = self._describe(e)
            stack = traceback.format_exc()
            logger.error(
                "plugin_failed id=%s duration_ms=%d msg=%s\n%s",
                plugin.id,
                duration_ms,
                message,
                stack,
            )
            return PluginExecutionResult(
                plugin_id=plugin.id,
                success=False,
                duration_ms=duration_ms,
                error=AnalysisError(
                    ErrorKind.PLUGIN_EXECUTION_ERROR,
                    message,
                    ErrorDetails(plugin_id=plugin.id, stack_trace=stack),
                ),
            )

        duration_ms = int((time.perf_counter() - t0) * 1000)
        logger.info("plugin_ok id=%s duration_ms=%d", plugin.id, duration_ms)
        return PluginExecutionResult(
            plugin_id=plugin.id,
            success=True,
            duration_ms=duration_ms,
            result=processed,
        )

    def _describe(self, e: BaseException) -> str:
        if isinstance(e, TimeoutError) and self._timeout:
            return f"Plugin timed out after {self._timeout}s"
        if isinstance(e, SystemExit):
            return f"Plugin called exit with code {e.code}"
        return str(e) or type(e).__name__

    async def execute_plugins(
        self,
        result: AnalysisResult,
        plugin_ids: Sequence[str],
        working_directory: str,
    ) -> AnalysisResult:
        """
        Run plugins strictly in the order of plugin_ids.

        Each plugin receives the original image path and the accumulated
        result. The execution log is rebuilt from empty on every call.
        """
        self._execution_log = []

        available = await anyio.to_thread.run_sync(self._source.discover, working_directory)
        by_id = {p.id: p for p in available}

        image_path = result.image_path
        current = result

        for plugin_id in plugin_ids:
            plugin = by_id.get(plugin_id)
            if plugin is None:
                logger.warning("plugin_not_found id=%s", plugin_id)
                PLUGIN_EXECUTIONS_TOTAL.labels(plugin=plugin_id, result="not_found").inc()
                self._execution_log.append(
                    PluginExecutionLogEntry(
                        plugin_id=plugin_id,
                        success=False,
                        duration_ms=0,
                        error=f"Plugin not found: {plugin_id}",
                    )
                )
                continue

            outcome = await self.execute_single_plugin(plugin, image_path, current)
            PLUGIN_EXECUTIONS_TOTAL.labels(plugin=plugin_id, result="ok" if outcome.success else "failed").inc()
            self._execution_log.append(outcome.log_entry())
            if outcome.result is not None:
                current = outcome.result

        return current
