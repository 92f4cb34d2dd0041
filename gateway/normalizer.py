"""Request normalization: drop empty messages and tame inline attachments."""

import base64
import binascii
import re
from typing import List, Union

from .schemas import ChatMessage, ContentPart, ImagePart, TextPart


MAX_INLINE_TEXT_CHARS = 200_000
MAX_DOCUMENT_PREVIEW_CHARS = 120_000
IMAGE_PLACEHOLDER = "[image attached]"

_INLINE_DATA_RE = re.compile(r"data:([a-z0-9+/.-]+);base64,([A-Za-z0-9+/=]+)", re.IGNORECASE)
_TEXT_LIKE_RE = re.compile(r"^text/|json$|xml$|csv$|markdown$", re.IGNORECASE)
_DOC_LIKE_RE = re.compile(
    r"(pdf|msword|officedocument|spreadsheet|presentation|excel|powerpoint)", re.IGNORECASE
)


def _replace_inline(match: "re.Match[str]") -> str:
    mime = match.group(1) or ""
    b64 = match.group(2) or ""
    try:
        # Senders often drop the trailing padding.
        raw = base64.b64decode(b64 + "=" * (-len(b64) % 4), validate=True)
    except (binascii.Error, ValueError):
        return f"[embedded file: {mime}]"
    if _TEXT_LIKE_RE.search(mime):
        text = raw.decode("utf-8", errors="replace")
        if len(text) > MAX_INLINE_TEXT_CHARS:
            return f"{text[:MAX_INLINE_TEXT_CHARS]}... [truncated text from {mime}]"
        return text
    if _DOC_LIKE_RE.search(mime):
        preview = b64
        if len(b64) > MAX_DOCUMENT_PREVIEW_CHARS:
            preview = f"{b64[:MAX_DOCUMENT_PREVIEW_CHARS]}... [truncated base64 from {mime}]"
        return f"[document {mime} base64 preview]\n{preview}"
    return f"[embedded file: {mime}]"


def extract_inline_data(content: str) -> str:
    """Replace ``data:<mime>;base64,...`` payloads with something a model can use."""
    if not content or "base64," not in content:
        return content
    return _INLINE_DATA_RE.sub(_replace_inline, content)


def _normalize_parts(parts: List[ContentPart]) -> List[ContentPart]:
    cleaned: List[ContentPart] = []
    for part in parts:
        if isinstance(part, TextPart):
            text = extract_inline_data(part.text)
            if text.strip():
                cleaned.append(TextPart(text=text))
        elif isinstance(part, ImagePart) and part.image_url.url:
            cleaned.append(part)
    return cleaned


def normalize_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    normalized: List[ChatMessage] = []
    for msg in messages:
        if isinstance(msg.content, list):
            parts = _normalize_parts(msg.content)
            if not parts:
                continue
            normalized.append(ChatMessage(role=msg.role, content=parts))
            continue
        if not msg.content or not msg.content.strip():
            continue
        text = extract_inline_data(msg.content)
        if not text.strip():
            continue
        normalized.append(ChatMessage(role=msg.role, content=text))
    return normalized


def message_to_text(content: Union[str, List[ContentPart]]) -> str:
    if isinstance(content, list):
        return "\n".join(part.text for part in content if isinstance(part, TextPart))
    return content or ""


def flatten_content(content: Union[str, List[ContentPart]]) -> str:
    """Collapse multi-part content to text for providers that reject image parts."""
    if isinstance(content, list):
        return "\n\n".join(
            part.text if isinstance(part, TextPart) else IMAGE_PLACEHOLDER for part in content
        )
    return content or ""


def flatten_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    return [
        msg if isinstance(msg.content, str) else ChatMessage(role=msg.role, content=flatten_content(msg.content))
        for msg in messages
    ]
