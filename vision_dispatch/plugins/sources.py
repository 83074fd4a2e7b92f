from __future__ import annotations

import hashlib
import importlib.util
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from vision_dispatch.config import settings
from vision_dispatch.plugins.base import (
    FunctionPlugin,
    ImageAnalysisPlugin,
    PluginManifest,
    validate_plugin_interface,
)

logger = logging.getLogger(__name__)

PLUGIN_MANIFEST_FILE = "plugin.json"


class PluginSource(Protocol):
    """
    Where a PluginLoader gets its plugins from.

    discover() is called once per pipeline run, so directory-backed sources
    pick up plugins added between runs.
    """

    def discover(self, working_directory: str) -> List[ImageAnalysisPlugin]:
        ...


class InMemoryPluginSource:
    """Fixed registry for tests and embedding; ignores the working directory."""

    def __init__(self, plugins: Optional[List[ImageAnalysisPlugin]] = None):
        self._plugins: Dict[str, ImageAnalysisPlugin] = {}
        for p in plugins or []:
            self.register(p)

    def register(self, plugin: ImageAnalysisPlugin) -> None:
        validation = validate_plugin_interface(plugin)
        if not validation.valid:
            raise ValueError(f"Invalid plugin: {', '.join(validation.errors)}")
        self._plugins[plugin.id] = plugin

    def unregister(self, plugin_id: str) -> None:
        self._plugins.pop(plugin_id, None)

    def clear(self) -> None:
        self._plugins.clear()

    @property
    def plugins(self) -> Dict[str, ImageAnalysisPlugin]:
        return dict(self._plugins)

    def discover(self, working_directory: str) -> List[ImageAnalysisPlugin]:
        return list(self._plugins.values())


@dataclass(frozen=True)
class PluginScan:
    """Outcome of one directory scan; errors holds one reason per skipped candidate."""
    plugins: List[ImageAnalysisPlugin] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class DirectoryPluginSource:
    """
    Scans <working_directory>/<plugins_directory>/*/plugin.json.

    Every candidate is checked structurally before it is registered; a
    broken candidate is logged and skipped, never fatal to the scan. The
    source keeps no per-scan state.
    """

    def __init__(self, plugins_directory: Optional[str] = None):
        self._plugins_directory = plugins_directory or settings.plugins_directory

    def plugins_path(self, working_directory: str) -> Path:
        return Path(working_directory) / self._plugins_directory

    def discover(self, working_directory: str) -> List[ImageAnalysisPlugin]:
        return self.scan(working_directory).plugins

    def scan(self, working_directory: str) -> PluginScan:
        root = self.plugins_path(working_directory)
        if not root.is_dir():
            logger.info("plugins_dir_missing path=%s", root)
            return PluginScan()

        scan = PluginScan()
        for entry in sorted(root.iterdir()):
            if not entry.is_dir():
                continue
            try:
                plugin = self._load_candidate(entry, scan.errors)
            except (Exception, SystemExit) as e:  # module code runs at import
                _skip(scan.errors, entry, f"failed to load: {type(e).__name__}: {e}")
                continue
            if plugin is not None:
                scan.plugins.append(plugin)
                logger.info("plugin_loaded id=%s version=%s", plugin.id, plugin.version)
        return scan

    def _load_candidate(self, plugin_dir: Path, errors: List[str]) -> Optional[ImageAnalysisPlugin]:
        manifest_path = plugin_dir / PLUGIN_MANIFEST_FILE
        if not manifest_path.is_file():
            _skip(errors, plugin_dir, f"manifest not found: {manifest_path}")
            return None

        try:
            manifest = PluginManifest.model_validate(
                json.loads(manifest_path.read_text(encoding="utf-8"))
            )
        except (json.JSONDecodeError, ValidationError) as e:
            _skip(errors, plugin_dir, f"invalid manifest: {e}")
            return None

        main = Path(manifest.main)
        if not main.suffix:
            main = main.with_suffix(".py")
        module_path = plugin_dir / main
        if not module_path.is_file():
            _skip(errors, plugin_dir, f"main file not found: {module_path}")
            return None

        module = _import_module(module_path)
        process = getattr(module, "process_image", None)

        plugin = FunctionPlugin(
            id=manifest.id or getattr(module, "id", ""),
            name=manifest.name or getattr(module, "name", ""),
            version=manifest.version or getattr(module, "version", ""),
            process=process,  # type: ignore[arg-type]
        )
        problems = validate_plugin_interface(plugin).errors
        if not callable(process):
            problems = [*problems, "Plugin must have a 'process_image' function"]
        if problems:
            _skip(errors, plugin_dir, "; ".join(problems))
            return None
        return plugin


def _skip(errors: List[str], entry: Path, reason: str) -> None:
    msg = f"{entry.name}: {reason}"
    errors.append(msg)
    logger.warning("plugin_skipped %s", msg)


def _import_module(path: Path) -> ModuleType:
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:12]
    spec = importlib.util.spec_from_file_location(f"vision_dispatch_plugin_{digest}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot import plugin module from {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module
