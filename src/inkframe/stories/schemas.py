"""Pydantic schemas for story endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class PageResponse(BaseModel):
    id: str
    page_number: int
    prompt: str
    image_url: str
    character_image_urls: list[str] = []
    created_at: datetime


class StorySummary(BaseModel):
    id: str
    slug: str
    title: str
    description: Optional[str] = None
    style: str
    created_at: datetime


class StoryResponse(StorySummary):
    pages: list[PageResponse] = []
