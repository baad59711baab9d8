"""Provider fallback executor.

Walks the provider chain in priority order, one attempt per provider, and
returns the first success. Failures are reported to an observer and the
next provider is tried; if every provider fails the last error propagates.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from inkframe.common.exceptions import NoProvidersConfiguredError
from inkframe.providers.profiles import ProviderProfile
from inkframe.providers.together import ImageRequest, ProviderImage

FailureObserver = Callable[[ProviderProfile, Exception], None]


class ImageClient(Protocol):
    async def generate_image(self, profile: ProviderProfile, request: ImageRequest) -> ProviderImage:
        ...


@dataclass
class GenerationOutcome:
    profile: ProviderProfile
    duration_ms: float
    image_url: str
    raw: dict[str, Any]

    @property
    def provider_used(self) -> str:
        return self.profile.id


class ProviderFallbackExecutor:
    def __init__(self, client: ImageClient):
        self.client = client

    async def generate(
        self,
        profiles: list[ProviderProfile],
        request: ImageRequest,
        on_failure: Optional[FailureObserver] = None,
    ) -> GenerationOutcome:
        if not profiles:
            raise NoProvidersConfiguredError()

        last_error: Optional[Exception] = None
        for profile in profiles:
            started = time.perf_counter()
            try:
                image = await self.client.generate_image(profile, request)
            except Exception as e:
                if on_failure is not None:
                    on_failure(profile, e)
                last_error = e
                continue
            return GenerationOutcome(
                profile=profile,
                duration_ms=(time.perf_counter() - started) * 1000,
                image_url=image.url,
                raw=image.raw,
            )

        raise last_error
