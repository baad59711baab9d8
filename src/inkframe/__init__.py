"""Inkframe: prompt-to-comic generation service with metered, idempotent generation."""

from inkframe.client import InkframeClient

__all__ = ["InkframeClient"]
__version__ = "0.1.0"
