import asyncio
import json

import anyio

from vision_dispatch.core.types import AnalysisResult, BoundingBox, DetectionLabel
from vision_dispatch.persistence.results_manager import ResultsManager


def _result(idx: int = 1, ocr_text=None, labels=()) -> AnalysisResult:
    return AnalysisResult(
        id=f"r-{idx}",
        image_path=f"/photos/{idx}.png",
        timestamp=f"2024-05-0{idx}T10:00:00Z",
        model_id="model-a",
        mode="cloud",
        duration_ms=42,
        labels=tuple(labels),
        ocr_text=ocr_text,
    )


def _manager(tmp_path, **kw) -> ResultsManager:
    return ResultsManager(str(tmp_path), results_directory=".image-analysis", **kw)


def test_history_round_trips_full_result(tmp_path):
    labels = [
        DetectionLabel("Straße", 0.61, BoundingBox(1, 2, 30, 40)),
        DetectionLabel("東京タワー", 0.99),
    ]
    original = _result(1, ocr_text="Grüße aus 東京 ✓", labels=labels)
    manager = _manager(tmp_path)

    asyncio.run(manager.process_result(original))
    history = asyncio.run(manager.get_history())

    assert len(history) == 1
    assert history[0].full_result == original
    assert history[0].image_path == "/photos/1.png"
    assert history[0].model_id == "model-a"


def test_file_layout_and_unescaped_utf8(tmp_path):
    manager = _manager(tmp_path)

    asyncio.run(manager.process_result(_result(1, ocr_text="東京")))

    path = tmp_path / ".image-analysis" / "results.json"
    assert manager.results_file() == path
    text = path.read_text(encoding="utf-8")
    assert "東京" in text

    data = json.loads(text)
    assert data["version"] == "1.0.0"
    entry = data["results"][0]
    assert set(entry) == {"imagePath", "timestamp", "resultsSummary", "modelId", "fullResult"}
    assert entry["fullResult"]["inferenceMode"] == "cloud"


def test_summary_keeps_top_five_by_confidence(tmp_path):
    labels = [DetectionLabel(f"l{i}", c) for i, c in enumerate([0.1, 0.9, 0.5, 0.7, 0.3, 0.8, 0.2])]
    manager = _manager(tmp_path)

    persisted = asyncio.run(manager.process_result(_result(1, labels=labels)))

    assert persisted.summary.label_count == 7
    assert persisted.summary.top_labels == ["l1", "l5", "l3", "l2", "l4"]
    assert persisted.summary.has_ocr_text is False


def test_results_are_appended_in_order(tmp_path):
    manager = _manager(tmp_path)

    for i in (1, 2, 3):
        asyncio.run(manager.process_result(_result(i)))

    ids = [p.full_result.id for p in asyncio.run(manager.get_history())]
    assert ids == ["r-1", "r-2", "r-3"]


def test_concurrent_appends_from_separate_managers_keep_every_entry(tmp_path):
    async def main():
        async with anyio.create_task_group() as tg:
            for i in range(30):
                # one manager per request, as the HTTP pipeline builds them
                tg.start_soon(_manager(tmp_path).process_result, _result(i % 9 + 1).with_changes(id=f"c-{i}"))

    asyncio.run(main())

    history = asyncio.run(_manager(tmp_path).get_history())
    assert sorted(p.full_result.id for p in history) == sorted(f"c-{i}" for i in range(30))
    assert list(_manager(tmp_path).results_dir().glob("*.tmp")) == []


def test_concurrent_appends_with_rotation_lose_nothing(tmp_path):
    async def main():
        async with anyio.create_task_group() as tg:
            for i in range(20):
                tg.start_soon(
                    _manager(tmp_path, max_file_size_bytes=2000).process_result,
                    _result(1).with_changes(id=f"r-{i}"),
                )

    asyncio.run(main())

    ids = []
    for path in _manager(tmp_path).results_dir().glob("results*.json"):
        ids += [r["fullResult"]["id"] for r in json.loads(path.read_text(encoding="utf-8"))["results"]]
    assert sorted(ids) == sorted(f"r-{i}" for i in range(20))


def test_empty_history_when_nothing_persisted(tmp_path):
    manager = _manager(tmp_path)

    assert asyncio.run(manager.get_history()) == []
    assert asyncio.run(manager.get_file_size()) == 0


def test_clear_history_keeps_an_empty_file(tmp_path):
    manager = _manager(tmp_path)
    asyncio.run(manager.process_result(_result(1)))

    asyncio.run(manager.clear_history())

    assert asyncio.run(manager.get_history()) == []
    data = json.loads(manager.results_file().read_text(encoding="utf-8"))
    assert data == {"version": "1.0.0", "results": []}


def test_file_is_rotated_once_it_reaches_the_cap(tmp_path):
    manager = _manager(tmp_path, max_file_size_bytes=200)

    asyncio.run(manager.process_result(_result(1, labels=[DetectionLabel("x" * 300, 0.5)])))
    assert asyncio.run(manager.get_file_size()) >= 200

    asyncio.run(manager.process_result(_result(2)))

    rotated = sorted(manager.results_dir().glob("results-*.json"))
    assert len(rotated) == 1
    old = json.loads(rotated[0].read_text(encoding="utf-8"))
    assert [r["fullResult"]["id"] for r in old["results"]] == ["r-1"]
    assert [p.full_result.id for p in asyncio.run(manager.get_history())] == ["r-2"]


def test_rotate_if_needed_is_a_noop_below_the_cap(tmp_path):
    manager = _manager(tmp_path)
    asyncio.run(manager.process_result(_result(1)))

    assert asyncio.run(manager.rotate_if_needed()) is False
    assert list(manager.results_dir().glob("results-*.json")) == []
