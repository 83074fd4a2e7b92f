import asyncio
import json
import ssl
import time

import anyio
import httpx
import pytest

from vision_dispatch.backends.cloud_endpoint import (
    SENSITIVE_QUERY_PARAMS,
    CloudEndpointAdapter,
    CloudEndpointConfig,
    build_tls_context,
    validate_endpoint_url,
)
from vision_dispatch.core.errors import AnalysisError, ErrorKind
from vision_dispatch.core.types import RetryConfig

URL = "https://inference.example.com/v1/analyze"


class RecordingHandler:
    """
    httpx.MockTransport handler that replays a scripted sequence of outcomes.

    Each item is an int status, a (status, body) tuple, or an exception class
    to raise. The last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []
        self.times = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.times.append(time.perf_counter())
        step = self.script[min(len(self.requests) - 1, len(self.script) - 1)]

        if isinstance(step, type) and issubclass(step, Exception):
            raise step("simulated network failure", request=request)
        if isinstance(step, tuple):
            status, body = step
        else:
            status, body = step, {}
        return httpx.Response(status, json=body)


def _adapter(handler, *, url=URL, max_attempts=3, backoff_ms=(10, 20)) -> CloudEndpointAdapter:
    cfg = CloudEndpointConfig(
        endpoint_url=url,
        timeout_seconds=5.0,
        retry=RetryConfig(max_attempts=max_attempts, backoff_ms=backoff_ms),
    )
    return CloudEndpointAdapter(cfg, transport=httpx.MockTransport(handler))


def _ok_body():
    return {
        "labels": [
            {"label": "cat", "confidence": 0.4, "boundingBox": {"x": 1, "y": 2, "width": 3, "height": 4}},
            {"label": "dog", "confidence": 0.9},
        ],
        "ocrText": "hello",
        "modelId": "server-model",
    }


def test_success_parses_labels_in_backend_order():
    handler = RecordingHandler((200, _ok_body()))
    adapter = _adapter(handler)

    result = asyncio.run(adapter.analyze("aGVsbG8=", "client-model"))

    assert [lbl.label for lbl in result.labels] == ["cat", "dog"]
    assert result.labels[0].bounding_box.width == 3
    assert result.labels[1].bounding_box is None
    assert result.ocr_text == "hello"
    assert result.model_id == "server-model"
    assert result.mode == "cloud"
    assert result.image_path == ""
    assert result.duration_ms >= 0
    assert len(handler.requests) == 1


def test_request_shape_is_json_post_with_image_and_model():
    handler = RecordingHandler((200, {}))
    adapter = _adapter(handler)

    result = asyncio.run(adapter.analyze("aGVsbG8=", "m-1"))

    req = handler.requests[0]
    assert req.method == "POST"
    assert req.headers["content-type"] == "application/json"
    assert json.loads(req.content) == {"image": "aGVsbG8=", "modelId": "m-1"}
    # absent optional fields get defaults
    assert result.labels == ()
    assert result.ocr_text is None
    assert result.model_id == "m-1"


def test_5xx_retries_exactly_max_attempts_with_backoff_then_fails():
    handler = RecordingHandler(500)
    adapter = _adapter(handler, max_attempts=3, backoff_ms=(10, 20))

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    err = e.value
    assert len(handler.requests) == 3
    assert err.kind == ErrorKind.ENDPOINT_ERROR_5XX
    assert "after 3 attempts" in err.message
    assert err.retryable is False
    assert err.details.http_status == 500

    gap1 = handler.times[1] - handler.times[0]
    gap2 = handler.times[2] - handler.times[1]
    assert gap1 >= 0.008
    assert gap2 >= 0.018


def test_backoff_index_is_clamped_to_last_value(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(anyio, "sleep", fake_sleep)

    handler = RecordingHandler(503)
    adapter = _adapter(handler, max_attempts=5, backoff_ms=(10, 20))

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 5
    # no sleep after the final attempt
    assert delays == [0.01, 0.02, 0.02, 0.02]
    assert "after 5 attempts" in e.value.message


def test_4xx_fails_immediately_without_backoff(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(anyio, "sleep", fake_sleep)

    handler = RecordingHandler(404, 200)
    adapter = _adapter(handler, max_attempts=3)

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 1
    assert delays == []
    assert e.value.kind == ErrorKind.ENDPOINT_ERROR_4XX
    assert e.value.details.http_status == 404
    assert e.value.retryable is False


def test_5xx_then_success_returns_result():
    handler = RecordingHandler(502, (200, _ok_body()))
    adapter = _adapter(handler, backoff_ms=(1,))

    result = asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 2
    assert len(result.labels) == 2


def test_network_errors_follow_the_retry_path():
    handler = RecordingHandler(httpx.ConnectError)
    adapter = _adapter(handler, max_attempts=2, backoff_ms=(1,))

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 2
    assert e.value.kind == ErrorKind.ENDPOINT_UNREACHABLE
    assert "after 2 attempts" in e.value.message
    assert e.value.retryable is False


def test_timeouts_follow_the_retry_path():
    handler = RecordingHandler(httpx.ReadTimeout, (200, {}))
    adapter = _adapter(handler, max_attempts=3, backoff_ms=(1,))

    result = asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 2
    assert result.mode == "cloud"


def test_error_field_in_body_is_not_retried():
    handler = RecordingHandler((200, {"error": {"code": "bad_model", "message": "unknown model"}}))
    adapter = _adapter(handler)

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert len(handler.requests) == 1
    assert e.value.kind == ErrorKind.ENDPOINT_ERROR_4XX
    assert "unknown model" in e.value.message
    assert e.value.details.http_status == 400


def test_unparsable_body_is_client_error():
    def handler(request):
        return httpx.Response(200, text="<html>nope</html>")

    adapter = CloudEndpointAdapter(
        CloudEndpointConfig(endpoint_url=URL), transport=httpx.MockTransport(handler)
    )

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert e.value.kind == ErrorKind.ENDPOINT_ERROR_4XX


@pytest.mark.parametrize(
    "url",
    [
        "http://inference.example.com/v1/analyze",
        "ftp://inference.example.com/model",
        "not a url",
        "",
    ],
)
def test_insecure_or_invalid_url_fails_before_any_network_call(url):
    handler = RecordingHandler(200)
    adapter = _adapter(handler, url=url)

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert handler.requests == []
    assert e.value.retryable is False


@pytest.mark.parametrize("param", SENSITIVE_QUERY_PARAMS)
def test_sensitive_query_parameter_is_rejected_regardless_of_value(param):
    handler = RecordingHandler(200)
    adapter = _adapter(handler, url=f"{URL}?region=eu&{param}=")

    with pytest.raises(AnalysisError) as e:
        asyncio.run(adapter.analyze("aGVsbG8=", "m"))

    assert handler.requests == []
    assert param in e.value.message


def test_sensitive_parameter_check_is_case_sensitive():
    validate_endpoint_url(f"{URL}?Token=abc&region=eu")


def test_tls_context_floor_is_tls_1_2():
    ctx = build_tls_context()
    assert ctx.minimum_version == ssl.TLSVersion.TLSv1_2
    assert ctx.verify_mode == ssl.CERT_REQUIRED


@pytest.mark.parametrize("status,expected", [(200, True), (404, True), (499, True), (500, False), (503, False)])
def test_is_available_reports_status_below_500(status, expected):
    handler = RecordingHandler(status)
    adapter = _adapter(handler)

    assert asyncio.run(adapter.is_available()) is expected
    assert handler.requests[0].method == "HEAD"
    assert handler.requests[0].content == b""


def test_is_available_never_raises():
    handler = RecordingHandler(httpx.ConnectError)
    assert asyncio.run(_adapter(handler).is_available()) is False
    assert asyncio.run(_adapter(handler, url="").is_available()) is False
    assert asyncio.run(_adapter(handler, url="http://plain.example.com").is_available()) is False


def test_update_config_replaces_value_without_mutating_old_one():
    adapter = _adapter(RecordingHandler(200))
    before = adapter.config

    after = adapter.update_config(endpoint_url="https://other.example.com/x")

    assert before.endpoint_url == URL
    assert after.endpoint_url == "https://other.example.com/x"
    assert adapter.config is after
    assert after.retry is before.retry
