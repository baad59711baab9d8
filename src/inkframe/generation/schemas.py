"""Pydantic schemas for generation endpoints."""

import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

COMIC_STYLES = ("american-modern", "manga", "noir", "vintage", "webtoon")
PANEL_LAYOUTS = ("3-panel", "4-panel", "5-panel", "6-panel")
MAX_CHARACTER_IMAGES = 2
MAX_IMAGE_URL_LENGTH = 2048


def _check_character_images(urls: list[str]) -> list[str]:
    if len(urls) > MAX_CHARACTER_IMAGES:
        raise ValueError(f"at most {MAX_CHARACTER_IMAGES} character images are allowed")
    cleaned = []
    for url in urls:
        url = url.strip()
        if len(url) > MAX_IMAGE_URL_LENGTH:
            raise ValueError("character image URL is too long")
        if not url.startswith(("http://", "https://")):
            raise ValueError("character image URLs must be http(s)")
        cleaned.append(url)
    return cleaned


class GenerateComicRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    story_id: Optional[str] = Field(default=None, min_length=1, max_length=160)
    prompt: str = Field(..., min_length=1, max_length=6000)
    style: str = "noir"
    panel_layout: Optional[str] = None
    character_images: list[str] = Field(default_factory=list)
    is_continuation: bool = False
    previous_context: str = Field(default="", max_length=2000)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("style")
    @classmethod
    def _known_style(cls, v: str) -> str:
        if v not in COMIC_STYLES:
            raise ValueError(f"style must be one of {', '.join(COMIC_STYLES)}")
        return v

    @field_validator("panel_layout")
    @classmethod
    def _known_layout(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in PANEL_LAYOUTS:
            raise ValueError(f"panel_layout must be one of {', '.join(PANEL_LAYOUTS)}")
        return v

    @field_validator("character_images")
    @classmethod
    def _valid_images(cls, v: list[str]) -> list[str]:
        return _check_character_images(v)


class AddPageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    story_slug: str = Field(..., min_length=1, max_length=160)
    page_id: Optional[str] = None
    prompt: str = Field(..., min_length=1, max_length=6000)
    panel_layout: Optional[str] = None
    character_images: list[str] = Field(default_factory=list)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("page_id")
    @classmethod
    def _page_id_is_uuid(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            return str(uuid.UUID(v))
        except ValueError:
            raise ValueError("page_id must be a UUID")

    @field_validator("panel_layout")
    @classmethod
    def _known_layout(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in PANEL_LAYOUTS:
            raise ValueError(f"panel_layout must be one of {', '.join(PANEL_LAYOUTS)}")
        return v

    @field_validator("character_images")
    @classmethod
    def _valid_images(cls, v: list[str]) -> list[str]:
        return _check_character_images(v)


class NewStoryResponse(BaseModel):
    image_url: str
    story_id: str
    story_slug: str
    page_id: str
    page_number: int
    title: str
    description: Optional[str] = None


class PageGenerationResponse(BaseModel):
    image_url: str
    page_id: str
    page_number: int
