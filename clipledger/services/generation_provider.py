"""
Generation Provider Protocol - Provider-agnostic interface.

Every adapter absorbs its provider's request shape, status vocabulary and
result nesting; nothing provider-specific crosses this boundary.

Both current providers are hosted by KIE AI and answer with the same
{code, msg, data} envelope, so the HTTP plumbing lives in KieClient and the
adapters hold one by composition.
"""

import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from structlog import get_logger

from clipledger.exceptions import (
    ProviderRejectedError,
    TransientFetchError,
    UnsupportedModeError,
)
from clipledger.models.api import GenerationMode, NormalizedState, ProviderName
from clipledger.models.domain import GenerationRequest, NormalizedStatus

logger = get_logger(__name__)

# Envelope codes
CODE_SUCCESS = 200
CODE_GENERATION_FAILED = 501

DEFAULT_FAILURE_REASON = "Video generation failed"


class GenerationProvider(Protocol):
    """
    Generation provider protocol.

    Adapters are stateless translators; task state is owned by the orchestrator.
    """

    name: ProviderName
    supported_modes: frozenset[GenerationMode]

    def clip_seconds(self, request: GenerationRequest) -> int:
        """
        Length of the clip this request will produce, used for pricing.

        Raises:
            InvalidGenerationRequestError: duration not offered by the provider
        """
        ...

    async def submit(self, request: GenerationRequest) -> str:
        """
        Send the request in the provider's native shape.

        Returns:
            The provider's task id

        Raises:
            UnsupportedModeError: request mode not in supported_modes
            ProviderRejectedError: provider refused the request
        """
        ...

    async def fetch_status(self, provider_task_id: str) -> NormalizedStatus:
        """
        Poll the provider and normalize its answer.

        Raises:
            TransientFetchError: network error or malformed/missing fields
        """
        ...


@dataclass(frozen=True)
class Envelope:
    """KIE AI response wrapper."""

    code: int
    msg: str
    data: dict[str, Any] | None


class KieClient:
    """Authenticated JSON client for the KIE AI API."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def post(self, path: str, payload: dict[str, Any]) -> Envelope:
        return await self._request("POST", path, json=payload)

    async def get(self, path: str, params: dict[str, str]) -> Envelope:
        return await self._request("GET", path, params=params)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Envelope:
        """
        Send a request and unwrap the envelope.

        Raises:
            httpx.HTTPError: transport failure
            ValueError: body is not a well-formed envelope
        """
        response = await self.http_client.request(
            method,
            f"{self.base_url}{path}",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            **kwargs,
        )

        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"expected JSON object, got {type(body).__name__}")

        # Error responses sometimes carry the envelope, sometimes only an HTTP status
        code = body.get("code", response.status_code)
        if not isinstance(code, int) or isinstance(code, bool):
            raise ValueError(f"envelope code is not an integer: {code!r}")

        data = body.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValueError("envelope data is not an object")

        return Envelope(code=code, msg=str(body.get("msg") or ""), data=data)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


# ============================================================================
# Shared adapter helpers
# ============================================================================


def require_supported_mode(provider: GenerationProvider, request: GenerationRequest) -> None:
    """Refuse requests the provider cannot serve before any network call."""
    if request.mode not in provider.supported_modes:
        raise UnsupportedModeError(provider.name.value, request.mode.value)


async def submit_task(
    provider: ProviderName, client: KieClient, path: str, payload: dict[str, Any]
) -> str:
    """POST a generation request and return the provider task id."""
    try:
        envelope = await client.post(path, payload)
    except httpx.HTTPError as exc:
        logger.warning("provider_submit_transport_error", provider=provider.value, error=str(exc))
        raise ProviderRejectedError(provider.value, f"request failed: {exc}") from exc
    except ValueError as exc:
        logger.warning("provider_submit_malformed_response", provider=provider.value, error=str(exc))
        raise ProviderRejectedError(provider.value, f"malformed response: {exc}") from exc

    if envelope.code != CODE_SUCCESS:
        logger.info(
            "provider_submit_rejected",
            provider=provider.value,
            code=envelope.code,
            msg=envelope.msg,
        )
        raise ProviderRejectedError(
            provider.value, envelope.msg or f"code {envelope.code}", envelope.code
        )

    task_id = (envelope.data or {}).get("taskId")
    if not isinstance(task_id, str) or not task_id:
        raise ProviderRejectedError(provider.value, "response carried no taskId")

    logger.info("provider_task_submitted", provider=provider.value, provider_task_id=task_id)
    return task_id


async def fetch_record(
    provider: ProviderName, client: KieClient, path: str, provider_task_id: str
) -> Envelope:
    """
    GET a task record.

    Returns an envelope whose code is either success (with data) or the
    explicit generation-failed code; everything else is transient.
    """
    try:
        envelope = await client.get(path, {"taskId": provider_task_id})
    except httpx.HTTPError as exc:
        raise TransientFetchError(provider.value, f"request failed: {exc}") from exc
    except ValueError as exc:
        raise TransientFetchError(provider.value, f"malformed response: {exc}") from exc

    if envelope.code == CODE_GENERATION_FAILED:
        return envelope
    if envelope.code != CODE_SUCCESS:
        raise TransientFetchError(
            provider.value, f"status code {envelope.code}: {envelope.msg or 'no message'}"
        )
    if envelope.data is None:
        raise TransientFetchError(provider.value, "status response carried no data")
    return envelope


def failed_status(reason: Any, provider_state: str | None = None) -> NormalizedStatus:
    """Failure status; whatever the provider put in its error field becomes text."""
    if reason is None or reason == "":
        text = DEFAULT_FAILURE_REASON
    elif isinstance(reason, str):
        text = reason
    else:
        text = str(reason)
    return NormalizedStatus(
        state=NormalizedState.FAILED,
        failure_reason=text,
        provider_state=provider_state,
    )


def load_json_object(value: Any) -> dict[str, Any] | None:
    """Accept an object or a JSON-encoded object; anything else is None."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def first_http_url(payload: dict[str, Any] | None, keys: tuple[str, ...]) -> str | None:
    """First http(s) URL found under keys, each holding a string or a list."""
    if not payload:
        return None
    for key in keys:
        field = payload.get(key)
        if isinstance(field, list):
            for item in field:
                if isinstance(item, str) and item.startswith("http"):
                    return item
        elif isinstance(field, str) and field.startswith("http"):
            return field
    return None
