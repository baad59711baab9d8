"""Error taxonomy mapper: turns saga failures into client-facing errors.

Classification is deterministic and never echoes raw provider or database
text back to the caller.
"""

import errno
import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from sqlalchemy import exc as sa_exc

from inkframe.common.exceptions import ProviderError


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    CONTENT_POLICY = "content_policy"
    CREDIT_LIMIT = "credit_limit"
    PROVIDER_ERROR = "provider_error"
    INFRA_UNAVAILABLE = "infra_unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class MappedError:
    kind: ErrorKind
    status_code: int
    message: str

    @property
    def code(self) -> str:
        return self.kind.value.upper()

    def to_body(self) -> dict:
        return {"error": self.message, "code": self.code}


INVALID_REFERENCE_MESSAGE = (
    "One of the reference images could not be processed. "
    "Please upload PNG or JPG/JPEG images and try again."
)
CONTENT_POLICY_MESSAGE = (
    "This request was blocked by the image provider's content policy. "
    "Please revise your prompt and try again."
)
CREDIT_LIMIT_MESSAGE = (
    "The image provider account is out of credits. "
    "Add credits at https://api.together.ai/settings/billing or update the API key."
)
INFRA_UNAVAILABLE_MESSAGE = (
    "A required backing service is unavailable. Please retry shortly."
)
UNKNOWN_MESSAGE = "Generation failed. Please retry."

_INVALID_REFERENCE_SIGNATURES = ("invalid reference image", "reference_images[")
_CONTENT_POLICY_PATTERN = re.compile(
    r"content[ _-]?policy|safety system|nsfw|flagged|moderation|prohibited content",
    re.IGNORECASE,
)
_INFRA_MESSAGE_PATTERN = re.compile(
    r"connection refused|database.*unavailable|could not connect|timed? ?out",
    re.IGNORECASE,
)
_INFRA_ERRNOS = {errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ETIMEDOUT, errno.ENETUNREACH}
_INFRA_TYPES = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    ConnectionError,
    socket.gaierror,
)


def iter_error_chain(error: BaseException) -> Iterator[BaseException]:
    """Breadth-first walk over causes, contexts, group members and DBAPI originals."""
    queue: list[BaseException] = [error]
    seen: set[int] = set()
    while queue:
        current = queue.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current

        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                queue.append(linked)
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException):
            queue.append(orig)
        nested = getattr(current, "exceptions", None)
        if isinstance(nested, (list, tuple)):
            queue.extend(e for e in nested if isinstance(e, BaseException))


def _provider_error(error: BaseException) -> ProviderError | None:
    for current in iter_error_chain(error):
        if isinstance(current, ProviderError):
            return current
    return None


def is_infra_unavailable(error: BaseException) -> bool:
    for current in iter_error_chain(error):
        if isinstance(current, _INFRA_TYPES):
            return True
        if isinstance(current, OSError) and current.errno in _INFRA_ERRNOS:
            return True
        if _INFRA_MESSAGE_PATTERN.search(str(current)):
            return True
    return False


def classify_error(error: BaseException) -> MappedError:
    """Classify a failure into exactly one ErrorKind."""
    provider = _provider_error(error)
    if provider is not None:
        message = provider.message.lower()
        if any(sig in message for sig in _INVALID_REFERENCE_SIGNATURES):
            return MappedError(ErrorKind.INVALID_INPUT, 400, INVALID_REFERENCE_MESSAGE)
        if _CONTENT_POLICY_PATTERN.search(provider.message):
            return MappedError(ErrorKind.CONTENT_POLICY, 400, CONTENT_POLICY_MESSAGE)
        if provider.status_code == 402:
            return MappedError(ErrorKind.CREDIT_LIMIT, 402, CREDIT_LIMIT_MESSAGE)
        if provider.status_code is not None:
            status = provider.status_code if 400 <= provider.status_code <= 599 else 502
            return MappedError(
                ErrorKind.PROVIDER_ERROR,
                status,
                f"Failed to generate image: provider returned HTTP {provider.status_code}.",
            )
        # Provider timeouts and transport failures never count as infrastructure.
        return MappedError(ErrorKind.UNKNOWN, 500, UNKNOWN_MESSAGE)

    if is_infra_unavailable(error):
        return MappedError(ErrorKind.INFRA_UNAVAILABLE, 503, INFRA_UNAVAILABLE_MESSAGE)

    return MappedError(ErrorKind.UNKNOWN, 500, UNKNOWN_MESSAGE)
