"""
Backend stream messages — decode heterogeneous shapes into a closed union.

Backends emit loosely-shaped messages: the agent SDK yields assistant
messages with content blocks and a terminal result, the HTTP API yields
SSE events, some transports yield bare strings. decode_message() turns any
of them into exactly one of the variants below, so the streaming loop can
dispatch on type instead of probing optional fields.

Text precedence (first that yields text wins):
1. content blocks     — concatenated non-empty `text` of blocks typed "text"
2. flat text field    — `text`
3. result message     — type "result", subtype "success", string `result`
4. raw string         — the message itself
5. anything else      — UnrecognizedMessage (empty text, never an error)

A message typed "error" always decodes to ErrorMessage, keeping an integer
`status_code` when the backend supplied one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorMessage:
    """The backend reported a failure; the run must stop."""

    error_text: str
    raw: Any = None
    status_code: Optional[int] = None

    @property
    def text(self) -> str:
        return ""


@dataclass(frozen=True)
class ContentBlocksMessage:
    text: str
    block_count: int = 0
    raw: Any = None


@dataclass(frozen=True)
class TextMessage:
    text: str
    raw: Any = None


@dataclass(frozen=True)
class ResultMessage:
    text: str
    raw: Any = None


@dataclass(frozen=True)
class RawTextMessage:
    text: str


@dataclass(frozen=True)
class UnrecognizedMessage:
    raw: Any = None

    @property
    def text(self) -> str:
        return ""


BackendMessage = Union[
    ErrorMessage,
    ContentBlocksMessage,
    TextMessage,
    ResultMessage,
    RawTextMessage,
    UnrecognizedMessage,
]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _get(obj: Any, name: str) -> Any:
    """Read a field from a mapping or an attribute-style object."""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _content_text(message: Any) -> tuple[str, int] | None:
    nested = _get(message, "message")
    content = _get(nested, "content") if nested is not None else None
    if content is None:
        content = _get(message, "content")
    if not isinstance(content, (list, tuple)):
        return None

    parts = []
    for block in content:
        if block is None or _get(block, "type") != "text":
            continue
        text = _get(block, "text")
        if isinstance(text, str) and text:
            parts.append(text)
    if not parts:
        return None
    return "".join(parts), len(parts)


def _error_text(message: Any) -> str:
    error = _get(message, "error")
    if isinstance(error, str) and error:
        return error
    text = _get(error, "message") if error is not None else None
    if isinstance(text, str) and text:
        return text
    text = _get(message, "message")
    if isinstance(text, str) and text:
        return text
    return "backend_error"


def _status_code(message: Any) -> Optional[int]:
    status = _get(message, "status_code")
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def decode_message(message: Any) -> BackendMessage:
    """Decode one raw backend message. Total: never raises."""
    if isinstance(message, str):
        return RawTextMessage(text=message)
    if message is None:
        return UnrecognizedMessage(raw=message)

    if _get(message, "type") == "error":
        return ErrorMessage(
            error_text=_error_text(message),
            raw=message,
            status_code=_status_code(message),
        )

    blocks = _content_text(message)
    if blocks is not None:
        text, count = blocks
        return ContentBlocksMessage(text=text, block_count=count, raw=message)

    text = _get(message, "text")
    if isinstance(text, str):
        return TextMessage(text=text, raw=message)

    if _get(message, "type") == "result" and _get(message, "subtype") == "success":
        result = _get(message, "result")
        if isinstance(result, str):
            return ResultMessage(text=result, raw=message)

    return UnrecognizedMessage(raw=message)
