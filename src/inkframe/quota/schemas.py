"""Pydantic schemas for quota endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CreditsResponse(BaseModel):
    credits_remaining: int
    limit: int
    reset_at: Optional[datetime] = None
