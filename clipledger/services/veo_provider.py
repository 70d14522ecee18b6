"""
Veo Generation Provider Implementation.

Native status is an integer successFlag:
    0 generating, 1 success, 2 failed, 3 generation failed
Result URLs live under response.resultUrls, with response.originUrls as
fallback when no processed variant exists.
"""

from typing import Any

from structlog import get_logger

from clipledger.exceptions import TransientFetchError
from clipledger.models.api import GenerationMode, NormalizedState, ProviderName
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

GENERATION_TYPES = {
    GenerationMode.TEXT_TO_VIDEO: "TEXT_2_VIDEO",
    # One image: video unfolds around it. Two: first and last frame.
    GenerationMode.IMAGE_TO_VIDEO: "FIRST_AND_LAST_FRAMES_2_VIDEO",
}

FLAG_GENERATING = 0
FLAG_SUCCESS = 1
FLAG_FAILED = 2
FLAG_GENERATION_FAILED = 3

RESULT_URL_KEYS = ("resultUrls", "originUrls")


class VeoProvider:
    """Veo 3.1 via KIE AI."""

    name = ProviderName.VEO
    supported_modes = frozenset({GenerationMode.TEXT_TO_VIDEO, GenerationMode.IMAGE_TO_VIDEO})

    def __init__(
        self,
        client: KieClient,
        model: str = "veo3_fast",
        clip_length: int = 8,
        callback_url: str | None = None,
        enable_translation: bool = True,
    ) -> None:
        self.client = client
        self.model = model
        self.clip_length = clip_length
        self.callback_url = callback_url
        self.enable_translation = enable_translation

    def clip_seconds(self, request: GenerationRequest) -> int:
        # Veo renders a fixed-length clip whatever duration is asked for
        return self.clip_length

    async def submit(self, request: GenerationRequest) -> str:
        require_supported_mode(self, request)

        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "model": self.model,
            "aspectRatio": request.aspect_ratio.value,
            "generationType": GENERATION_TYPES[request.mode],
            "enableTranslation": self.enable_translation,
        }
        if request.mode == GenerationMode.IMAGE_TO_VIDEO:
            payload["imageUrls"] = list(request.image_urls)
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        return await submit_task(self.name, self.client, "/veo/generate", payload)

    async def fetch_status(self, provider_task_id: str) -> NormalizedStatus:
        envelope = await fetch_record(
            self.name, self.client, "/veo/record-info", provider_task_id
        )
        if envelope.code == CODE_GENERATION_FAILED:
            return failed_status(envelope.msg, provider_state=str(envelope.code))

        data = envelope.data or {}
        flag = data.get("successFlag")
        if not isinstance(flag, int) or isinstance(flag, bool):
            raise TransientFetchError(self.name.value, f"missing successFlag: {flag!r}")

        if flag == FLAG_GENERATING:
            return NormalizedStatus(state=NormalizedState.RUNNING, provider_state=str(flag))

        if flag == FLAG_SUCCESS:
            result_url = first_http_url(load_json_object(data.get("response")), RESULT_URL_KEYS)
            if result_url is None:
                logger.warning(
                    "veo_success_without_url",
                    provider_task_id=provider_task_id,
                )
            return NormalizedStatus(
                state=NormalizedState.SUCCEEDED,
                result_url=result_url,
                provider_state=str(flag),
            )

        if flag in (FLAG_FAILED, FLAG_GENERATION_FAILED):
            return failed_status(data.get("errorMessage"), provider_state=str(flag))

        raise TransientFetchError(self.name.value, f"unknown successFlag: {flag}")
