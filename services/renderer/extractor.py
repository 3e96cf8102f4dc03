import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup
from lxml.etree import ParserError
from readability import Document
from readability.readability import Unparseable

from .errors import ExtractionError
from .settings import min_content_length

logger = logging.getLogger(__name__)

EXCERPT_MAX_LEN = 300
_BLOCK_TAGS = ["p", "li", "blockquote", "pre", "h1", "h2", "h3", "h4", "h5", "h6", "figcaption", "td"]
_BYLINE_SELECTORS = [
    "[rel=author]",
    "[itemprop=author]",
    ".byline",
    ".author",
    ".article-author",
]


@dataclass
class ExtractedArticle:
    url: str
    title: str
    content: str
    text_content: str
    excerpt: str
    byline: str
    site_name: str
    published_time: str

    def to_dict(self) -> dict:
        return asdict(self)


def _squash(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip()


def _meta(page: BeautifulSoup, *keys: str) -> str:
    for key in keys:
        for attr in ("property", "name", "itemprop"):
            tag = page.find("meta", attrs={attr: key})
            if tag and _squash(tag.get("content")):
                return _squash(tag.get("content"))
    return ""


def _json_ld_objects(page: BeautifulSoup) -> List[dict]:
    objects: List[dict] = []
    for script in page.find_all("script", attrs={"type": "application/ld+json"}):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            continue
        stack = data if isinstance(data, list) else [data]
        while stack:
            item = stack.pop(0)
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                stack.extend(graph)
            objects.append(item)
    return objects


def _names(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [_squash(value)]
    if isinstance(value, dict):
        return _names(value.get("name"))
    if isinstance(value, list):
        names: List[str] = []
        for item in value:
            names.extend(_names(item))
        return names
    return []


def _first(values: Iterable[str]) -> str:
    for value in values:
        if value:
            return value
    return ""


def _looks_like_url(value: str) -> bool:
    return bool(re.match(r"^(https?:)?//", value))


def _find_byline(page: BeautifulSoup, ld_objects: List[dict]) -> str:
    for obj in ld_objects:
        names = [name for name in _names(obj.get("author")) if name and not _looks_like_url(name)]
        if names:
            return ", ".join(dict.fromkeys(names))
    meta_author = _meta(page, "author", "article:author", "parsely-author", "sailthru.author")
    if meta_author and not _looks_like_url(meta_author):
        return meta_author
    for selector in _BYLINE_SELECTORS:
        for node in page.select(selector):
            if node.name == "meta":
                continue
            text = _squash(node.get_text(" "))
            if text and len(text) <= 100:
                return text
    return ""


def _find_site_name(page: BeautifulSoup, ld_objects: List[dict]) -> str:
    site_name = _meta(page, "og:site_name", "application-name")
    if site_name:
        return site_name
    for obj in ld_objects:
        names = _names(obj.get("publisher"))
        if names:
            return names[0]
    return ""


def _find_published_time(page: BeautifulSoup, ld_objects: List[dict]) -> str:
    for obj in ld_objects:
        value = obj.get("datePublished")
        if isinstance(value, str) and value.strip():
            return value.strip()
    published = _meta(
        page,
        "article:published_time",
        "datePublished",
        "og:published_time",
        "date",
        "pubdate",
        "dc.date",
    )
    if published:
        return published
    time_tag = page.find("time", attrs={"datetime": True})
    if time_tag:
        return _squash(time_tag.get("datetime"))
    return ""


def _find_title(document: Document, page: BeautifulSoup, ld_objects: List[dict]) -> str:
    title = _squash(document.short_title())
    if title and title != "[no-title]":
        return title
    for obj in ld_objects:
        headline = obj.get("headline")
        if isinstance(headline, str) and headline.strip():
            return _squash(headline)
    og_title = _meta(page, "og:title", "twitter:title")
    if og_title:
        return og_title
    heading = page.find("h1")
    return _squash(heading.get_text(" ")) if heading else ""


def _text_lines(content: BeautifulSoup) -> str:
    lines: List[str] = []
    blocks = content.find_all(_BLOCK_TAGS)
    if not blocks:
        return _squash(content.get_text(" "))
    for block in blocks:
        if block.find_parent(_BLOCK_TAGS):
            continue
        text = _squash(block.get_text(" "))
        if text:
            lines.append(text)
    return "\n".join(lines)


def _truncate(value: str, limit: int = EXCERPT_MAX_LEN) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."


def _find_excerpt(page: BeautifulSoup, content: BeautifulSoup) -> str:
    description = _meta(page, "description", "og:description", "twitter:description")
    if description:
        return _truncate(description)
    for paragraph in content.find_all("p"):
        text = _squash(paragraph.get_text(" "))
        if text:
            return _truncate(text)
    return ""


def extract_article(html: str, url: str, *, min_length: Optional[int] = None) -> ExtractedArticle:
    if not html or not html.strip():
        raise ExtractionError(f"Empty document for {url}")
    threshold = min_length if min_length is not None else min_content_length()
    document = Document(html, url=url)
    try:
        summary = document.summary(html_partial=True)
    except (Unparseable, ParserError) as exc:
        raise ExtractionError(f"Could not parse {url}: {exc}") from exc

    content = BeautifulSoup(summary, "lxml")
    text_content = _text_lines(content)
    if len(_squash(text_content)) < threshold:
        logger.warning(
            "No main content found for %s (%d chars, need %d)", url, len(_squash(text_content)), threshold
        )
        raise ExtractionError(f"No readable article content found at {url}")

    page = BeautifulSoup(html, "lxml")
    ld_objects = _json_ld_objects(page)
    body = content.body or content
    return ExtractedArticle(
        url=url,
        title=_find_title(document, page, ld_objects),
        content=body.decode_contents().strip(),
        text_content=text_content,
        excerpt=_find_excerpt(page, content),
        byline=_find_byline(page, ld_objects),
        site_name=_find_site_name(page, ld_objects),
        published_time=_find_published_time(page, ld_objects),
    )
