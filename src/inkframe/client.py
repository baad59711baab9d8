"""
InkframeClient SDK: sync client for the Inkframe generation API.

Every generation call gets one idempotency key that is reused across its
retries, so a retried request can never be charged or generated twice.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

IDEMPOTENCY_HEADER = "X-Idempotency-Key"


@dataclass
class ClientResult:
    """Outcome of a generation call."""

    ok: bool
    status_code: int
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    code: str = ""
    idempotency_key: str = ""
    replayed: bool = False

    @property
    def is_rate_limited(self) -> bool:
        return bool(self.data.get("is_rate_limited"))


@dataclass
class ClientCredits:
    remaining: int
    limit: int
    reset_at: Optional[datetime] = None


class InkframeClient:
    """
    Synchronous HTTP client for Inkframe.

    Retries transport errors, 5xx responses and 409 (the same request still in
    progress) with exponential backoff. Other 4xx responses, 429 included, are
    returned as-is: exhausted credits do not come back by retrying.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:8080",
        token: Optional[str] = None,
        timeout: int = 300,
        max_retries: int = 4,
        retry_backoff_base: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.token = token
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self._http = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key
        return headers

    def _sleep(self, attempt: int) -> None:
        time.sleep(self.retry_backoff_base * (2 ** attempt))

    def _generate(
        self, path: str, body: dict[str, Any], idempotency_key: Optional[str],
    ) -> ClientResult:
        """POST a generation request, retrying with one stable idempotency key."""
        key = idempotency_key or str(uuid.uuid4())
        last_error = ""
        last_status = 0
        for attempt in range(self.max_retries):
            try:
                resp = self._http.post(path, json=body, headers=self._headers(key))
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                if attempt < self.max_retries - 1:
                    self._sleep(attempt)
                    continue
                break

            try:
                data = resp.json()
            except json.JSONDecodeError:
                data = {}
            if not isinstance(data, dict):
                data = {}

            if resp.status_code == 409 or resp.status_code >= 500:
                last_status = resp.status_code
                last_error = data.get("error", f"HTTP {resp.status_code}")
                if attempt < self.max_retries - 1:
                    self._sleep(attempt)
                    continue
                return ClientResult(
                    ok=False, status_code=resp.status_code, data=data,
                    error=last_error, code=data.get("code", "SERVER_ERROR"),
                    idempotency_key=key,
                )
            if resp.status_code >= 400:
                return ClientResult(
                    ok=False, status_code=resp.status_code, data=data,
                    error=data.get("error", f"HTTP {resp.status_code}"),
                    code=data.get("code", "CLIENT_ERROR"),
                    idempotency_key=key,
                )
            return ClientResult(
                ok=True, status_code=resp.status_code, data=data,
                idempotency_key=key,
                replayed=resp.headers.get("X-Idempotent-Replay") == "true",
            )

        return ClientResult(
            ok=False, status_code=last_status,
            error=f"All {self.max_retries} retries exhausted: {last_error}",
            code="CONNECTION_ERROR", idempotency_key=key,
        )

    # ── Generation ──

    def generate_comic(
        self,
        prompt: str,
        style: str = "noir",
        story_id: Optional[str] = None,
        panel_layout: Optional[str] = None,
        character_images: list[str] | None = None,
        previous_context: str = "",
        idempotency_key: Optional[str] = None,
    ) -> ClientResult:
        """Start a new story, or continue ``story_id`` with its next page."""
        body: dict[str, Any] = {
            "prompt": prompt,
            "style": style,
            "character_images": character_images or [],
        }
        if story_id:
            body["story_id"] = story_id
            body["is_continuation"] = True
        if panel_layout:
            body["panel_layout"] = panel_layout
        if previous_context:
            body["previous_context"] = previous_context
        return self._generate("/generate-comic", body, idempotency_key)

    def add_page(
        self,
        story_slug: str,
        prompt: str,
        page_id: Optional[str] = None,
        panel_layout: Optional[str] = None,
        character_images: list[str] | None = None,
        idempotency_key: Optional[str] = None,
    ) -> ClientResult:
        """Add a page to a story, or redraw ``page_id``."""
        body: dict[str, Any] = {
            "story_slug": story_slug,
            "prompt": prompt,
            "character_images": character_images or [],
        }
        if page_id:
            body["page_id"] = page_id
        if panel_layout:
            body["panel_layout"] = panel_layout
        return self._generate("/add-page", body, idempotency_key)

    # ── Credits ──

    def check_credits(self) -> ClientCredits:
        resp = self._http.get("/credits", headers=self._headers())
        resp.raise_for_status()
        data = resp.json()
        reset_at = None
        if data.get("reset_at"):
            try:
                reset_at = datetime.fromisoformat(data["reset_at"])
            except (ValueError, TypeError):
                reset_at = None
        return ClientCredits(
            remaining=data.get("credits_remaining", 0),
            limit=data.get("limit", 0),
            reset_at=reset_at,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
