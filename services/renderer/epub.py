import logging
import re
import tempfile
import threading
import uuid
import zipfile
from datetime import datetime
from typing import List, Mapping, Optional, Tuple

from dateutil import parser

from . import dom
from .errors import ArchiveError, ExportCancelled
from .images import ImageAsset, ImageFetcher, resolve_images
from .settings import local_tz

logger = logging.getLogger(__name__)

MIMETYPE = "application/epub+zip"
META_SEPARATOR = " • "
_ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)

# Named entities that e-reader XML parsers reject without a DTD.
NAMED_ENTITIES = {
    "nbsp": 160,
    "ensp": 8194,
    "emsp": 8195,
    "thinsp": 8201,
    "ndash": 8211,
    "mdash": 8212,
    "lsquo": 8216,
    "rsquo": 8217,
    "sbquo": 8218,
    "ldquo": 8220,
    "rdquo": 8221,
    "bdquo": 8222,
    "hellip": 8230,
    "bull": 8226,
    "middot": 183,
    "laquo": 171,
    "raquo": 187,
    "copy": 169,
    "reg": 174,
    "trade": 8482,
    "deg": 176,
    "times": 215,
    "shy": 173,
}
_ENTITY_RE = re.compile(r"&(" + "|".join(NAMED_ENTITIES) + r");")

STRIPPED_TAGS = ["script", "iframe", "object", "embed", "style", "link", "meta", "form", "input", "button"]
IMG_DROPPED_ATTRS = ["srcset", "loading", "decoding", "style", "width", "height"]

FIGURE_CLASS = "epub-figure"
CAPTION_CLASS = "epub-caption"
IMAGE_CLASS = "epub-image"

_ROOT_XMLNS_RE = re.compile(r"^(<[A-Za-z][\w.\-]*)([^>]*?)\s+xmlns=(\"[^\"]*\"|'[^']*')")

EPUB_CSS = """
body {
  font-family: Georgia, Cambria, "Times New Roman", Times, serif;
  line-height: 1.6;
  color: #111;
  margin: 0;
  padding: 0 4%;
}
h1 { font-size: 1.7em; line-height: 1.25; margin: 0.8em 0 0.4em; }
h2 { font-size: 1.35em; line-height: 1.25; }
h3 { font-size: 1.15em; }
p { margin: 0 0 1em; text-indent: 0; }
div.meta {
  color: #555;
  font-size: 0.85em;
  margin-bottom: 2em;
  padding-bottom: 0.6em;
  border-bottom: 1px solid #ccc;
}
figure.epub-figure {
  margin: 1em 0;
  page-break-inside: avoid;
}
figcaption.epub-caption {
  font-size: 0.8em;
  text-align: center;
  color: #555;
}
img.epub-image {
  max-width: 100%;
  height: auto;
  display: block;
  margin: 0.7em auto;
  page-break-inside: avoid;
}
blockquote {
  border-left: 3px solid #999;
  padding-left: 0.8em;
  margin: 0.6em 0 1em;
}
pre { white-space: pre-wrap; font-size: 0.85em; }
a { color: #000; text-decoration: underline; }
"""

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def xml_escape(value: Optional[str]) -> str:
    if not value:
        return ""
    return (
        dom.strip_invalid_xml_chars(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def normalize_entities(html: str) -> str:
    if not html:
        return ""
    return _ENTITY_RE.sub(lambda match: f"&#{NAMED_ENTITIES[match.group(1)]};", html)


def epub_filename(title: Optional[str]) -> str:
    stem = re.sub(r"[^a-z0-9]+", "_", (title or "").lower()).strip("_")
    return f"{stem or 'article'}.epub"


def book_uid(article_id) -> str:
    try:
        return f"urn:uuid:{uuid.UUID(str(article_id))}"
    except ValueError:
        return f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, str(article_id))}"


def _format_byline(byline: Optional[str]) -> Optional[str]:
    if not byline:
        return None
    stripped = byline.strip()
    if not stripped:
        return None
    if stripped.lower().startswith("by "):
        return stripped
    return f"By {stripped}"


def _format_created_at(raw) -> Optional[str]:
    if raw is None or raw == "":
        return None
    local = local_tz()
    if isinstance(raw, (int, float)):
        parsed = datetime.fromtimestamp(raw, local)
    else:
        try:
            parsed = parser.parse(str(raw))
        except (ValueError, OverflowError):
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=local)
        elif local:
            parsed = parsed.astimezone(local)
    return parsed.strftime("%b %d, %Y")


def _meta_line(article: Mapping) -> str:
    parts = [
        _format_byline(article.get("byline")),
        (article.get("site_name") or "").strip() or None,
        _format_created_at(article.get("created_at")),
    ]
    return META_SEPARATOR.join(part for part in parts if part)


def _article_title(article: Mapping) -> str:
    return (article.get("title") or "").strip() or "Untitled"


def _compose_document(article: Mapping, content: str):
    soup = dom.new_document()
    body = soup.body
    heading = soup.new_tag("h1")
    heading.string = _article_title(article)
    body.append(heading)
    meta_text = _meta_line(article)
    if meta_text:
        meta = soup.new_tag("div", attrs={"class": "meta"})
        meta.string = meta_text
        body.append(meta)
    fragment = dom.parse_fragment(content)
    source = fragment.body or fragment
    for node in list(source.contents):
        body.append(node.extract())
    return body


def _strip_unsupported_tags(body) -> None:
    for tag in dom.query(body, ", ".join(STRIPPED_TAGS)):
        if tag.decomposed:
            continue
        tag.decompose()


def _normalize_figures(body) -> None:
    for figure in dom.query(body, "figure"):
        figure.attrs.pop("style", None)
        figure["class"] = FIGURE_CLASS
    for caption in dom.query(body, "figcaption"):
        caption.attrs.pop("style", None)
        caption["class"] = CAPTION_CLASS
    for img in dom.query(body, "img"):
        for attr in IMG_DROPPED_ATTRS:
            img.attrs.pop(attr, None)
        img["class"] = IMAGE_CLASS


def _strip_root_namespace(markup: str) -> str:
    return _ROOT_XMLNS_RE.sub(r"\1\2", markup, count=1)


def _render_xhtml(title: str, body_xml: str) -> str:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">
<html xmlns="http://www.w3.org/1999/xhtml" xml:lang="en">
<head>
  <title>{xml_escape(title)}</title>
  <style type="text/css">{EPUB_CSS}</style>
</head>
{body_xml}
</html>
"""


def _creator(article: Mapping) -> str:
    for key in ("byline", "site_name"):
        value = (article.get(key) or "").strip()
        if value:
            return value
    return "Unknown"


def _render_opf(article: Mapping, assets: List[ImageAsset]) -> str:
    source = (article.get("url") or "").strip()
    source_line = f"\n    <dc:source>{xml_escape(source)}</dc:source>" if source else ""
    image_items = "".join(
        f'\n    <item id="{xml_escape(asset.id)}" href="{xml_escape(asset.href)}" '
        f'media-type="{xml_escape(asset.media_type)}"/>'
        for asset in assets
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" unique-identifier="BookId" version="2.0">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:title>{xml_escape(_article_title(article))}</dc:title>
    <dc:creator opf:role="aut">{xml_escape(_creator(article))}</dc:creator>
    <dc:language>en</dc:language>
    <dc:identifier id="BookId" opf:scheme="UUID">{xml_escape(book_uid(article.get("id")))}</dc:identifier>{source_line}
  </metadata>
  <manifest>
    <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>
    <item id="article" href="article.xhtml" media-type="application/xhtml+xml"/>{image_items}
  </manifest>
  <spine toc="ncx">
    <itemref idref="article"/>
  </spine>
</package>
"""


def _render_ncx(article: Mapping) -> str:
    title = xml_escape(_article_title(article))
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<ncx xmlns="http://www.daisy.org/z3986/2005/ncx/" version="2005-1">
  <head>
    <meta name="dtb:uid" content="{xml_escape(book_uid(article.get("id")))}"/>
    <meta name="dtb:depth" content="1"/>
    <meta name="dtb:totalPageCount" content="0"/>
    <meta name="dtb:maxPageNumber" content="0"/>
  </head>
  <docTitle>
    <text>{title}</text>
  </docTitle>
  <navMap>
    <navPoint id="navPoint-1" playOrder="1">
      <navLabel>
        <text>{title}</text>
      </navLabel>
      <content src="article.xhtml"/>
    </navPoint>
  </navMap>
</ncx>
"""


def _zip_info(name: str, compress_type: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=_ZIP_TIMESTAMP)
    info.compress_type = compress_type
    info.external_attr = 0o644 << 16
    return info


def _assemble(entries: List[Tuple[str, bytes]]) -> bytes:
    try:
        with tempfile.TemporaryFile(prefix="article-", suffix=".epub") as handle:
            with zipfile.ZipFile(handle, "w") as archive:
                archive.writestr(_zip_info("mimetype", zipfile.ZIP_STORED), MIMETYPE)
                for name, data in entries:
                    archive.writestr(_zip_info(name, zipfile.ZIP_DEFLATED), data)
            handle.seek(0)
            return handle.read()
    except (OSError, ValueError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"Could not write EPUB archive: {exc}") from exc


def build_article_epub(
    article: Mapping,
    *,
    fetch_image: Optional[ImageFetcher] = None,
    cancel: Optional[threading.Event] = None,
) -> bytes:
    """Render one stored article as an EPUB 2.0.1 package and return its bytes.

    ``article`` needs ``id`` and ``title``; ``content`` is the sanitized HTML
    stored at ingestion. ``byline``, ``site_name``, ``created_at`` and ``url``
    are used when present. Images that cannot be downloaded are left out;
    anything else that goes wrong aborts the export.
    """
    content = normalize_entities(article.get("content") or "")
    body = _compose_document(article, content)
    _strip_unsupported_tags(body)
    _normalize_figures(body)
    body, assets = resolve_images(body, fetch_image, cancel=cancel)
    body_xml = _strip_root_namespace(dom.serialize_xml(body))

    if cancel is not None and cancel.is_set():
        raise ExportCancelled("export cancelled before packaging")

    entries = [
        ("META-INF/container.xml", CONTAINER_XML.encode("utf-8")),
        ("OEBPS/content.opf", _render_opf(article, assets).encode("utf-8")),
        ("OEBPS/toc.ncx", _render_ncx(article).encode("utf-8")),
        ("OEBPS/article.xhtml", _render_xhtml(_article_title(article), body_xml).encode("utf-8")),
    ]
    entries.extend((f"OEBPS/{asset.href}", asset.data) for asset in assets)
    payload = _assemble(entries)
    logger.info(
        "Built EPUB for article %s: %d image(s), %d bytes",
        article.get("id"),
        len(assets),
        len(payload),
    )
    return payload
