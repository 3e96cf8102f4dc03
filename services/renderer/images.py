import copy
import logging
import mimetypes
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import requests
import urllib3
from bs4 import Tag

from .errors import ExportCancelled, ImageFetchError
from .fetcher import BROWSER_HEADERS, is_http_url
from .settings import image_max_bytes, image_timeout

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_TYPE = "image/jpeg"
IMAGE_DIR = "images"
READ_CHUNK_SIZE = 16384

_IMAGE_EXTS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/avif": "avif",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
}


@dataclass
class FetchedImage:
    data: bytes
    content_type: str


@dataclass
class ImageAsset:
    id: str
    href: str
    media_type: str
    data: bytes


ImageFetcher = Callable[[str], FetchedImage]


def extension_for(content_type: Optional[str]) -> str:
    if not content_type:
        return "jpg"
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type in _IMAGE_EXTS:
        return _IMAGE_EXTS[media_type]
    guessed = mimetypes.guess_extension(media_type)
    return guessed.lstrip(".") if guessed else "jpg"


def _read_limited(response: requests.Response, max_bytes: int, deadline: float) -> bytes:
    # read1 returns after one socket read; the deadline is checked between reads.
    total = 0
    chunks = []
    while True:
        if time.monotonic() > deadline:
            raise ImageFetchError("download exceeded its time budget")
        chunk = response.raw.read1(READ_CHUNK_SIZE, decode_content=True)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise ImageFetchError(f"image larger than {max_bytes} bytes")
        chunks.append(chunk)
    if not chunks:
        raise ImageFetchError("empty response body")
    return b"".join(chunks)


def download_image(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    max_bytes: Optional[int] = None,
) -> FetchedImage:
    """Download one image, bounded by ``timeout`` seconds in total."""
    budget = timeout if timeout is not None else image_timeout()
    limit = max_bytes if max_bytes is not None else image_max_bytes()
    deadline = time.monotonic() + budget
    headers = dict(BROWSER_HEADERS)
    headers["Accept"] = "image/avif,image/webp,image/png,image/jpeg,image/*;q=0.8,*/*;q=0.5"
    client = session or requests
    response = None
    try:
        response = client.get(url, headers=headers, timeout=budget, stream=True)
        if not 200 <= response.status_code < 300:
            raise ImageFetchError(f"HTTP {response.status_code}")
        content_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
        if content_type and not content_type.startswith("image/"):
            raise ImageFetchError(f"unexpected content type {content_type}")
        size_header = response.headers.get("Content-Length")
        if size_header and size_header.isdigit() and int(size_header) > limit:
            raise ImageFetchError(f"image larger than {limit} bytes")
        data = _read_limited(response, limit, deadline)
    except (requests.RequestException, urllib3.exceptions.HTTPError) as exc:
        raise ImageFetchError(str(exc)) from exc
    finally:
        if response is not None:
            response.close()
    return FetchedImage(data=data, content_type=content_type)


def resolve_images(
    tree: Tag,
    fetch_image: Optional[ImageFetcher] = None,
    *,
    cancel: Optional[threading.Event] = None,
) -> Tuple[Tag, List[ImageAsset]]:
    """Download every ``img`` of ``tree`` in document order.

    Returns a rewritten copy of ``tree`` and the downloaded assets. Images
    that cannot be downloaded are removed from the copy.
    """
    fetch = fetch_image or download_image
    resolved = copy.copy(tree)
    assets: List[ImageAsset] = []
    for img in resolved.find_all("img"):
        if cancel is not None and cancel.is_set():
            raise ExportCancelled("export cancelled while downloading images")
        src = (img.get("src") or "").strip()
        if not is_http_url(src):
            logger.debug("Dropping image with unusable src %r", src[:120])
            img.decompose()
            continue
        try:
            fetched = fetch(src)
        except ImageFetchError as exc:
            logger.warning("Dropping image %s: %s", src, exc)
            img.decompose()
            continue
        media_type = fetched.content_type or DEFAULT_IMAGE_TYPE
        if media_type in ("image/jpg", "image/pjpeg"):
            media_type = DEFAULT_IMAGE_TYPE
        index = len(assets) + 1
        asset = ImageAsset(
            id=f"image_{index}",
            href=f"{IMAGE_DIR}/image_{index}.{extension_for(fetched.content_type)}",
            media_type=media_type,
            data=fetched.data,
        )
        img["src"] = asset.href
        assets.append(asset)
    return resolved, assets
