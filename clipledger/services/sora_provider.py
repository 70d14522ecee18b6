"""
Sora Generation Provider Implementation.

Native status is a string state; the result is a JSON-encoded resultJson
whose URL key has changed between API revisions, so several are tried.
"""

from typing import Any

from structlog import get_logger

from clipledger.exceptions import InvalidGenerationRequestError, TransientFetchError
from clipledger.models.api import AspectRatio, GenerationMode, NormalizedState, ProviderName
from clipledger.models.domain import GenerationRequest, NormalizedStatus
from clipledger.services.generation_provider import (
    CODE_GENERATION_FAILED,
    KieClient,
    failed_status,
    fetch_record,
    first_http_url,
    load_json_object,
    require_supported_mode,
    submit_task,
)

logger = get_logger(__name__)

MODELS = {
    GenerationMode.TEXT_TO_VIDEO: "sora-2-text-to-video",
    GenerationMode.IMAGE_TO_VIDEO: "sora-2-image-to-video",
}

# Sora only knows two orientations; Auto falls back to landscape
ORIENTATIONS = {
    AspectRatio.LANDSCAPE: "landscape",
    AspectRatio.PORTRAIT: "portrait",
    AspectRatio.AUTO: "landscape",
}

CLIP_LENGTHS = (10, 15)

RUNNING_STATES = frozenset({"waiting", "queuing", "generating"})
SUCCESS_STATE = "success"
FAIL_STATE = "fail"

RESULT_URL_KEYS = (
    "resultUrls",
    "resultUrl",
    "resultWaterMarkUrls",
    "resultWatermarkUrls",
    "resultVideoUrls",
    "resultVideoUrl",
    "videoUrls",
    "videoUrl",
    "url",
)


class SoraProvider:
    """Sora 2 via KIE AI."""

    name = ProviderName.SORA
    supported_modes = frozenset({GenerationMode.TEXT_TO_VIDEO, GenerationMode.IMAGE_TO_VIDEO})

    def __init__(
        self,
        client: KieClient,
        default_clip_length: int = 10,
        callback_url: str | None = None,
        remove_watermark: bool = True,
    ) -> None:
        self.client = client
        self.default_clip_length = default_clip_length
        self.callback_url = callback_url
        self.remove_watermark = remove_watermark

    def clip_seconds(self, request: GenerationRequest) -> int:
        seconds = request.duration_seconds or self.default_clip_length
        if seconds not in CLIP_LENGTHS:
            raise InvalidGenerationRequestError(
                f"sora clips are {' or '.join(str(n) for n in CLIP_LENGTHS)} seconds, got {seconds}"
            )
        return seconds

    async def submit(self, request: GenerationRequest) -> str:
        require_supported_mode(self, request)

        task_input: dict[str, Any] = {
            "prompt": request.prompt,
            "aspect_ratio": ORIENTATIONS[request.aspect_ratio],
            "n_frames": str(self.clip_seconds(request)),
            "remove_watermark": self.remove_watermark,
        }
        if request.mode == GenerationMode.IMAGE_TO_VIDEO:
            task_input["image_urls"] = list(request.image_urls)

        payload: dict[str, Any] = {"model": MODELS[request.mode], "input": task_input}
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        return await submit_task(self.name, self.client, "/jobs/createTask", payload)

    async def fetch_status(self, provider_task_id: str) -> NormalizedStatus:
        envelope = await fetch_record(
            self.name, self.client, "/jobs/recordInfo", provider_task_id
        )
        if envelope.code == CODE_GENERATION_FAILED:
            return failed_status(envelope.msg, provider_state=str(envelope.code))

        data = envelope.data or {}
        state = data.get("state")
        if not isinstance(state, str):
            raise TransientFetchError(self.name.value, f"missing state: {state!r}")

        if state in RUNNING_STATES:
            return NormalizedStatus(state=NormalizedState.RUNNING, provider_state=state)

        if state == SUCCESS_STATE:
            result_url = first_http_url(load_json_object(data.get("resultJson")), RESULT_URL_KEYS)
            if result_url is None:
                logger.warning("sora_success_without_url", provider_task_id=provider_task_id)
            return NormalizedStatus(
                state=NormalizedState.SUCCEEDED, result_url=result_url, provider_state=state
            )

        if state == FAIL_STATE:
            return failed_status(data.get("failMsg"), provider_state=state)

        raise TransientFetchError(self.name.value, f"unknown state: {state}")
