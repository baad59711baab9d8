"""Shared Pydantic schemas for Inkframe."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "inkframe"


class ErrorResponse(BaseModel):
    error: str
    code: str
