"""Data URL helpers and extraction of model-generated images."""

import base64
import binascii
import logging
import mimetypes
import re
from typing import List, Optional, Tuple

from ..models import Attachment
from ..providers.types import ChatReply

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=.+-]+)*;base64,(?P<data>.*)$", re.DOTALL)
_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\((data:image/[^;)\s]+;base64,[A-Za-z0-9+/=\s]+)\)")


def to_data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> Optional[Tuple[str, bytes]]:
    """(mime type, bytes) of a base64 data URL; None for anything else."""
    match = _DATA_URL.match(url.strip())
    if not match:
        return None
    try:
        data = base64.b64decode("".join(match.group("data").split()), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Skipping data URL with invalid base64 payload")
        return None
    return match.group("mime") or "application/octet-stream", data


def extract_markdown_images(text: str) -> List[str]:
    return [match.group(1) for match in _MARKDOWN_IMAGE.finditer(text or "")]


def collect_generated_images(reply: ChatReply) -> List[Attachment]:
    """Images the model produced, as attachments ready to persist.

    Remote URLs are skipped; only inline ``data:`` images are stored.
    """
    urls = list(reply.images) + extract_markdown_images(reply.content)
    attachments: List[Attachment] = []
    seen = set()
    for url in urls:
        if url in seen:
            continue
        seen.add(url)
        decoded = decode_data_url(url)
        if decoded is None:
            continue
        mime_type, data = decoded
        extension = mimetypes.guess_extension(mime_type) or ".bin"
        attachments.append(
            Attachment(
                file_name=f"generated_{len(attachments) + 1}{extension}",
                mime_type=mime_type,
                data=data,
            )
        )
    return attachments
