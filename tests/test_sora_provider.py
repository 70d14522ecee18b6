"""
Tests for SoraProvider.
"""

import json

import httpx
import pytest

from clipledger.exceptions import InvalidGenerationRequestError, TransientFetchError
from clipledger.models.api import AspectRatio, GenerationMode, NormalizedState, ProviderName
from clipledger.models.domain import GenerationRequest
from clipledger.services.generation_provider import KieClient
from clipledger.services.sora_provider import SoraProvider


def make_provider(handler, **kwargs) -> SoraProvider:
    client = KieClient(
        api_key="kie-test-key",
        base_url="https://api.kie.test/api/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return SoraProvider(client, **kwargs)


def envelope(data: dict | None = None, code: int = 200, msg: str = "success") -> httpx.Response:
    return httpx.Response(200, json={"code": code, "msg": msg, "data": data})


def record(state: object, result_json: object = None, fail_msg: object = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return envelope(
            {"taskId": "sora_1", "state": state, "resultJson": result_json, "failMsg": fail_msg}
        )

    return handler


class TestSubmit:
    """Tests for createTask payloads."""

    async def test_image_to_video_payload(self, image_request: GenerationRequest):
        """Portrait, 15s, image mode."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return envelope({"taskId": "sora_task_1"})

        task_id = await make_provider(handler).submit(image_request)

        assert task_id == "sora_task_1"
        assert seen[0].url.path == "/api/v1/jobs/createTask"
        body = json.loads(seen[0].content)
        assert body["model"] == "sora-2-image-to-video"
        assert body["input"]["aspect_ratio"] == "portrait"
        assert body["input"]["n_frames"] == "15"
        assert body["input"]["image_urls"] == ["https://img.example.com/cat.png"]
        assert body["input"]["remove_watermark"] is True

    async def test_text_to_video_defaults(self):
        """No duration -> default 10s; Auto ratio -> landscape; no image_urls."""
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return envelope({"taskId": "sora_task_2"})

        request = GenerationRequest(
            provider=ProviderName.SORA,
            mode=GenerationMode.TEXT_TO_VIDEO,
            prompt="city at night",
            aspect_ratio=AspectRatio.AUTO,
        )
        await make_provider(handler).submit(request)

        task_input = bodies[0]["input"]
        assert bodies[0]["model"] == "sora-2-text-to-video"
        assert task_input["aspect_ratio"] == "landscape"
        assert task_input["n_frames"] == "10"
        assert "image_urls" not in task_input


class TestClipSeconds:
    """Sora offers two clip lengths."""

    @pytest.mark.parametrize("duration,expected", [(None, 10), (10, 10), (15, 15)])
    def test_offered_lengths(self, duration: int | None, expected: int):
        provider = make_provider(lambda r: envelope({}))
        request = GenerationRequest(
            provider=ProviderName.SORA,
            mode=GenerationMode.TEXT_TO_VIDEO,
            prompt="x",
            duration_seconds=duration,
        )
        assert provider.clip_seconds(request) == expected

    def test_other_lengths_rejected(self):
        provider = make_provider(lambda r: envelope({}))
        request = GenerationRequest(
            provider=ProviderName.SORA,
            mode=GenerationMode.TEXT_TO_VIDEO,
            prompt="x",
            duration_seconds=12,
        )
        with pytest.raises(InvalidGenerationRequestError):
            provider.clip_seconds(request)


class TestFetchStatus:
    """Tests for state normalization and result extraction."""

    @pytest.mark.parametrize("state", ["waiting", "queuing", "generating"])
    async def test_in_progress_states(self, state: str):
        status = await make_provider(record(state)).fetch_status("sora_1")
        assert status.state == NormalizedState.RUNNING
        assert status.provider_state == state

    async def test_success_parses_result_json(self):
        """resultJson is a JSON string."""
        result_json = json.dumps({"resultUrls": ["https://cdn.example.com/sora.mp4"]})
        status = await make_provider(record("success", result_json)).fetch_status("sora_1")

        assert status.state == NormalizedState.SUCCEEDED
        assert status.result_url == "https://cdn.example.com/sora.mp4"

    @pytest.mark.parametrize(
        "result_json",
        [
            {"resultWaterMarkUrls": ["https://cdn.example.com/wm.mp4"]},
            {"videoUrl": "https://cdn.example.com/wm.mp4"},
            {"url": "https://cdn.example.com/wm.mp4"},
            {"resultUrls": ["not-a-url"], "videoUrls": ["https://cdn.example.com/wm.mp4"]},
        ],
    )
    async def test_success_tries_alternate_keys(self, result_json: dict):
        status = await make_provider(record("success", json.dumps(result_json))).fetch_status(
            "sora_1"
        )
        assert status.result_url == "https://cdn.example.com/wm.mp4"

    @pytest.mark.parametrize("result_json", [None, "", "{not json", json.dumps({"other": 1})])
    async def test_success_without_usable_result(self, result_json: object):
        status = await make_provider(record("success", result_json)).fetch_status("sora_1")
        assert status.state == NormalizedState.SUCCEEDED
        assert status.result_url is None

    async def test_fail_state(self):
        status = await make_provider(record("fail", fail_msg="face detected")).fetch_status(
            "sora_1"
        )
        assert status.state == NormalizedState.FAILED
        assert status.failure_reason == "face detected"

    async def test_non_string_fail_message_becomes_text(self):
        """A numeric failMsg is stored as text, not passed through raw."""
        status = await make_provider(record("fail", fail_msg=4003)).fetch_status("sora_1")

        assert status.state == NormalizedState.FAILED
        assert status.failure_reason == "4003"

    async def test_code_501_is_failure(self):
        provider = make_provider(lambda r: envelope(None, code=501, msg="generation failed"))
        status = await provider.fetch_status("sora_1")
        assert status.state == NormalizedState.FAILED

    async def test_query_path(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return envelope({"state": "waiting"})

        await make_provider(handler).fetch_status("sora_9")

        assert seen[0].url.path == "/api/v1/jobs/recordInfo"
        assert seen[0].url.params["taskId"] == "sora_9"

    @pytest.mark.parametrize("state", [None, 3, "exploded"])
    async def test_unknown_state_is_transient(self, state: object):
        with pytest.raises(TransientFetchError):
            await make_provider(record(state)).fetch_status("sora_1")
