from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, Optional, Union

MEDIA_TYPES = ("image", "document", "video", "audio")
DEFAULT_DOCUMENT_NAME = "documento"
AUDIO_MIMETYPE = "audio/mp4"


def text_content(text: str) -> Dict[str, Any]:
    if not text or not text.strip():
        raise ValueError("text_required")
    return {"text": text}


def decode_base64(data: str) -> bytes:
    cleaned = (data or "").strip()
    if cleaned.startswith("data:") and "," in cleaned:
        cleaned = cleaned.split(",", 1)[1]
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid_base64") from exc


def media_content(
    media_type: str,
    source: Union[str, bytes],
    *,
    caption: Optional[str] = None,
    file_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Message content for a media send.

    ``source`` is either a URL or the raw media bytes.
    """

    if media_type not in MEDIA_TYPES:
        raise ValueError("unsupported_media_type")
    if not source:
        raise ValueError("media_required")
    media: Any = {"url": source} if isinstance(source, str) else source

    if media_type == "audio":
        return {"audio": media, "mimetype": AUDIO_MIMETYPE}

    content: Dict[str, Any] = {media_type: media}
    if media_type == "document":
        if not file_name and isinstance(source, str):
            file_name = source.rstrip("/").rsplit("/", 1)[-1]
        content["fileName"] = file_name or DEFAULT_DOCUMENT_NAME
    if caption:
        content["caption"] = caption
    return content


__all__ = ["MEDIA_TYPES", "decode_base64", "media_content", "text_content"]
