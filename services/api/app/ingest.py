import logging
from typing import Optional

import requests

from renderer import extract_article, fetch_html, sanitize_html
from renderer.errors import NotFound

from app.db import Library

logger = logging.getLogger(__name__)


def save_article(
    library: Library,
    url: str,
    *,
    list_id: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> dict:
    """Fetch ``url``, extract and sanitize the article, then store it.

    ``FetchError`` and ``ExtractionError`` propagate and nothing is stored.
    """
    url = url.strip()
    if list_id and library.get_list(list_id) is None:
        raise NotFound(f"List not found: {list_id}")
    raw_html = fetch_html(url, session=session)
    extracted = extract_article(raw_html, url)
    record = extracted.to_dict()
    record["title"] = extracted.title or "Untitled"
    record["content"] = sanitize_html(extracted.content)
    article = library.add_article(record, list_id=list_id)
    logger.info("Saved article %s from %s", article["id"], url)
    return article
