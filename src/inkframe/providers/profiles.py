"""Image provider profiles: the ordered fallback chain."""

from dataclasses import dataclass, field

from inkframe.common.config import InkframeSettings

MODEL_DIMENSIONS: dict[str, tuple[int, int]] = {
    "google/gemini-3-pro-image": (896, 1152),
    "google/flash-image-2.5": (864, 1184),
}
FALLBACK_DIMENSIONS = (864, 1184)


@dataclass(frozen=True)
class ProviderProfile:
    """One entry of the fallback chain. Lower priority runs first."""

    id: str
    provider: str
    model: str
    width: int
    height: int
    priority: int
    capabilities: tuple[str, ...] = field(default=("image_generation", "reference_images"))
    cost_tier: str = "standard"


def dimensions_for(model: str) -> tuple[int, int]:
    return MODEL_DIMENSIONS.get(model, FALLBACK_DIMENSIONS)


def _normalize_model(value: str | None) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def get_image_provider_profiles(settings: InkframeSettings) -> list[ProviderProfile]:
    """Build the provider chain from settings, sorted by priority."""
    primary = _normalize_model(settings.image_model)
    fallback = _normalize_model(settings.image_fallback_model)

    profiles: list[ProviderProfile] = []
    if primary:
        width, height = dimensions_for(primary)
        profiles.append(ProviderProfile(
            id="together-primary",
            provider="together",
            model=primary,
            width=width,
            height=height,
            priority=1,
        ))
    if fallback and fallback != primary:
        width, height = dimensions_for(fallback)
        profiles.append(ProviderProfile(
            id="together-fallback",
            provider="together",
            model=fallback,
            width=width,
            height=height,
            priority=2,
        ))

    return sorted(profiles, key=lambda p: p.priority)
