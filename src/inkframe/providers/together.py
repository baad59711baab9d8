"""Together AI image generation client."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from inkframe.common.config import InkframeSettings
from inkframe.common.exceptions import ProviderError
from inkframe.providers.profiles import ProviderProfile

logger = logging.getLogger(__name__)


@dataclass
class ImageRequest:
    """Provider-independent parameters of one image generation."""

    prompt: str
    reference_images: list[str] = field(default_factory=list)
    temperature: Optional[float] = None


@dataclass
class ProviderImage:
    url: str
    raw: dict[str, Any]


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500] or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {resp.status_code}"


class TogetherImageClient:
    """Calls the Together images endpoint for one provider profile at a time."""

    def __init__(
        self,
        settings: InkframeSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.together_base_url.rstrip("/"),
                timeout=self.settings.provider_timeout,
                transport=self._transport,
            )
        return self._http_client

    async def generate_image(self, profile: ProviderProfile, request: ImageRequest) -> ProviderImage:
        payload: dict[str, Any] = {
            "model": profile.model,
            "prompt": request.prompt,
            "width": profile.width,
            "height": profile.height,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.reference_images:
            payload["reference_images"] = list(request.reference_images)

        headers = {"Authorization": f"Bearer {self.settings.together_api_key}"}
        try:
            resp = await self._get_http_client().post(
                "/images/generations", json=payload, headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Provider {profile.id} timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider {profile.id} request failed: {e}") from e

        if resp.status_code >= 400:
            raise ProviderError(_error_message(resp), status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError("Provider returned invalid JSON") from e

        items = data.get("data") if isinstance(data, dict) else None
        first = items[0] if isinstance(items, list) and items else None
        url = first.get("url") if isinstance(first, dict) else None
        if not isinstance(url, str) or not url:
            raise ProviderError("No image URL in provider response")
        return ProviderImage(url=url, raw=data)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
