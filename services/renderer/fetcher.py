import logging
from typing import Optional
from urllib.parse import urlparse

import requests

from .errors import FetchError
from .settings import fetch_timeout

logger = logging.getLogger(__name__)

# Some sites answer non-browser clients with a 403 or a stub page.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def is_http_url(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def make_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(BROWSER_HEADERS)
    return session


def fetch_html(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
) -> str:
    """Return the body of ``url`` as text.

    Raises ``FetchError`` for anything other than a complete 2xx response.
    """
    if not is_http_url(url):
        raise FetchError(f"Not an absolute http(s) URL: {url!r}")
    client = session or requests
    effective_timeout = timeout if timeout is not None else fetch_timeout()
    try:
        response = client.get(
            url,
            headers=BROWSER_HEADERS,
            timeout=effective_timeout,
            allow_redirects=True,
        )
    except requests.Timeout as exc:
        raise FetchError(f"Timed out after {effective_timeout:g}s fetching {url}") from exc
    except requests.RequestException as exc:
        raise FetchError(f"Could not fetch {url}: {exc}") from exc

    try:
        if not 200 <= response.status_code < 300:
            raise FetchError(f"{url} returned HTTP {response.status_code}")
        content_type = response.headers.get("Content-Type", "")
        if "charset" not in content_type.lower():
            response.encoding = response.apparent_encoding
        text = response.text
    finally:
        response.close()

    logger.debug("Fetched %s (%d chars)", url, len(text))
    return text
