"""
Image Provider - Together AI image generation client.

One provider call per accepted request; no retries. Timeouts, transport
errors and HTTP errors all surface as ProviderError subclasses so the
gateway treats them as an ordinary failed generation.
"""

import json
from typing import Any, Protocol

import httpx
from structlog import get_logger

from app.exceptions import EmptyResultError, ProviderError, ProviderTimeoutError
from app.models.domain import GeneratedImage, ProviderImageRequest

logger = get_logger(__name__)

UNKNOWN_PROVIDER_ERROR = "Unknown provider error"


class ImageProvider(Protocol):
    """Anything that can turn a ProviderImageRequest into one image."""

    async def generate(self, request: ProviderImageRequest) -> GeneratedImage: ...

    async def close(self) -> None: ...


# ============================================================================
# Error Unwrapping
# ============================================================================


def _message_from_mapping(body: dict[str, Any]) -> str | None:
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    for key in ("message", "detail"):
        value = body.get(key)
        if isinstance(value, str):
            return value
    return None


def _message_from_text(text: str) -> str | None:
    text = text.strip()
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except ValueError:
        return text
    if isinstance(decoded, dict):
        return _message_from_mapping(decoded) or text
    return text


def extract_provider_error_message(failure: Any) -> str:
    """
    Human-readable message for a provider failure.

    Accepted shapes:
        {"error": {"message": "..."}}
        {"error": "..."}
        {"message": "..."}
        {"detail": "..."}
        plain text (or a JSON string of one of the shapes above)
        an exception carrying one of the above
    """
    if isinstance(failure, ProviderError):
        return failure.message
    if isinstance(failure, httpx.HTTPStatusError):
        return _message_from_text(failure.response.text) or (
            f"Image provider returned HTTP {failure.response.status_code}"
        )
    if isinstance(failure, BaseException):
        return _message_from_text(str(failure)) or type(failure).__name__
    if isinstance(failure, dict):
        return _message_from_mapping(failure) or UNKNOWN_PROVIDER_ERROR
    if isinstance(failure, (str, bytes)):
        text = failure.decode("utf-8", "replace") if isinstance(failure, bytes) else failure
        return _message_from_text(text) or UNKNOWN_PROVIDER_ERROR
    return UNKNOWN_PROVIDER_ERROR


# ============================================================================
# Together AI Client
# ============================================================================


class TogetherImageProvider:
    """Together AI REST client (POST {base_url}/images/generations)."""

    GENERATIONS_PATH = "/images/generations"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @staticmethod
    def build_payload(request: ProviderImageRequest) -> dict[str, Any]:
        """Provider JSON body for one generation."""
        params = request.params
        return {
            "model": params.base_model,
            "prompt": request.prompt,
            "n": request.n,
            "steps": request.steps,
            "width": params.width,
            "height": params.height,
            "image_loras": [
                {"path": overlay.model_ref, "scale": overlay.scale}
                for overlay in params.overlays
            ],
        }

    async def generate(self, request: ProviderImageRequest) -> GeneratedImage:
        """
        Generate one image.

        Raises:
            ProviderTimeoutError: no answer within the configured timeout
            ProviderError: transport failure or non-2xx response
            EmptyResultError: response carries neither a URL nor inline data
        """
        payload = self.build_payload(request)
        logger.info(
            "provider_request_started",
            model=payload["model"],
            width=payload["width"],
            height=payload["height"],
            overlays=len(payload["image_loras"]),
        )

        try:
            response = await self._http_client.post(self.GENERATIONS_PATH, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(self.timeout_seconds) from e
        except httpx.HTTPStatusError as e:
            message = extract_provider_error_message(e)
            logger.warning(
                "provider_http_error", status=e.response.status_code, error=message
            )
            raise ProviderError(message) from e
        except httpx.HTTPError as e:
            raise ProviderError(extract_provider_error_message(e)) from e

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("Image provider returned a non-JSON response") from e

        return self._first_image(body)

    @staticmethod
    def _first_image(body: Any) -> GeneratedImage:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise EmptyResultError()

        first = data[0]
        image = GeneratedImage(
            url=first.get("url") or None,
            b64_json=first.get("b64_json") or None,
        )
        if not image.image_ref:
            raise EmptyResultError()
        return image

    async def close(self) -> None:
        """Release pooled connections."""
        await self._http_client.aclose()
