"""Re-serve hosted PDFs inline so browsers render them instead of downloading."""

import logging
from typing import Iterator
from urllib.parse import urlsplit

import requests
from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from errors import UpstreamFailed, ValidationFailed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])

ALLOWED_HOST = "res.cloudinary.com"
CHUNK_SIZE = 64 * 1024


def allowed_url(raw: str) -> bool:
    try:
        parts = urlsplit(raw)
    except ValueError:
        return False
    return parts.scheme == "https" and parts.hostname == ALLOWED_HOST


def _relay(upstream: requests.Response) -> Iterator[bytes]:
    try:
        yield from upstream.iter_content(CHUNK_SIZE)
    finally:
        upstream.close()


@router.get("/pdf")
def proxy_pdf(url: str):
    if not allowed_url(url):
        raise ValidationFailed("Only media host URLs are allowed")
    try:
        upstream = requests.get(
            url,
            headers={"Accept": "application/pdf,*/*;q=0.9", "User-Agent": "Devlink-Proxy/1.0"},
            stream=True,
            timeout=30,
        )
    except requests.RequestException:
        logger.exception("PDF proxy fetch failed for %s", url)
        raise UpstreamFailed()
    if not upstream.ok:
        upstream.close()
        logger.warning("PDF proxy got %s for %s", upstream.status_code, url)
        raise UpstreamFailed("Upstream returned non-OK status")

    upstream_type = upstream.headers.get("content-type", "")
    media_type = "application/pdf" if "pdf" in upstream_type or not upstream_type else upstream_type
    return StreamingResponse(
        _relay(upstream),
        media_type=media_type,
        headers={"Content-Disposition": "inline", "Cache-Control": "private, max-age=3600"},
    )
