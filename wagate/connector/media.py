"""Load /sendMedia payloads: base64 body or remote URL (httpx) into a MediaPayload."""

import base64
import binascii
import logging
import mimetypes
from typing import Optional
from urllib.parse import urlparse

import httpx

from wagate.connector.base import MediaPayload
from wagate.core.errors import MediaError

logger = logging.getLogger(__name__)

_DEFAULT_MIMETYPE = "application/octet-stream"
# Refuse to buffer anything larger than this (WhatsApp document limit is lower anyway)
MAX_MEDIA_BYTES = 64 * 1024 * 1024


def _strip_data_url(value: str) -> tuple[str, Optional[str]]:
    """'data:image/png;base64,AAAA' -> ('AAAA', 'image/png'); plain base64 -> (value, None)."""
    if value.startswith("data:") and "," in value:
        header, body = value.split(",", 1)
        mime = header[5:].split(";", 1)[0] or None
        return body, mime
    return value, None


def decode_base64_media(value: str, mimetype: Optional[str] = None, filename: Optional[str] = None) -> MediaPayload:
    body, data_url_mime = _strip_data_url(value.strip())
    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaError(f"mediaBase64 is not valid base64: {e}") from e
    if not data:
        raise MediaError("mediaBase64 is empty")
    if len(data) > MAX_MEDIA_BYTES:
        raise MediaError(f"media too large ({len(data)} bytes)")
    mime = mimetype or data_url_mime or _guess_mimetype(filename) or _DEFAULT_MIMETYPE
    return MediaPayload(data=data, mimetype=mime, filename=filename)


async def fetch_media(
    url: str,
    mimetype: Optional[str] = None,
    filename: Optional[str] = None,
    timeout: float = 30.0,
    client: Optional[httpx.AsyncClient] = None,
) -> MediaPayload:
    """Download media from url. Content-Type header is used when mimetype is not given."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise MediaError(f"unsupported mediaUrl scheme: {parsed.scheme or '(none)'}")
    own_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        resp = await http.get(url)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise MediaError(f"failed to download media: {e}") from e
    finally:
        if own_client:
            await http.aclose()
    data = resp.content
    if not data:
        raise MediaError("downloaded media is empty")
    if len(data) > MAX_MEDIA_BYTES:
        raise MediaError(f"media too large ({len(data)} bytes)")
    name = filename or (parsed.path.rsplit("/", 1)[-1] or None)
    header_mime = (resp.headers.get("content-type") or "").split(";", 1)[0].strip() or None
    mime = mimetype or header_mime or _guess_mimetype(name) or _DEFAULT_MIMETYPE
    logger.debug("fetched media %s (%s bytes, %s)", url, len(data), mime)
    return MediaPayload(data=data, mimetype=mime, filename=name)


async def load_media(
    media_url: Optional[str] = None,
    media_base64: Optional[str] = None,
    mimetype: Optional[str] = None,
    filename: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> MediaPayload:
    """mediaBase64 wins when both are given. Raises MediaError when neither is usable."""
    if media_base64:
        return decode_base64_media(media_base64, mimetype, filename)
    if media_url:
        return await fetch_media(media_url, mimetype, filename, client=client)
    raise MediaError("mediaUrl or mediaBase64 is required")


def _guess_mimetype(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    mime, _ = mimetypes.guess_type(filename)
    return mime
