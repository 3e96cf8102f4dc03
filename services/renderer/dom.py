"""Narrow DOM capability used by the EPUB builder.

Everything that needs a tree goes through ``parse_fragment``, ``query`` and
``serialize_xml``; the builder never talks to the parser directly.
"""

import re
from typing import List

from bs4 import BeautifulSoup, CData, Comment, Declaration, Doctype, ProcessingInstruction, Tag
from bs4.formatter import HTMLFormatter

_XML_INVALID_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")
_XML_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


def strip_invalid_xml_chars(value: str) -> str:
    return _XML_INVALID_RE.sub("", value)


def _xml_text(value: str) -> str:
    value = strip_invalid_xml_chars(value)
    value = value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    # ASCII-only output: every other character becomes a numeric reference.
    return value.encode("ascii", "xmlcharrefreplace").decode("ascii")


XML_FORMATTER = HTMLFormatter(
    entity_substitution=_xml_text,
    void_element_close_prefix="/",
    cdata_containing_tags=set(),
)


def parse_fragment(markup: str) -> BeautifulSoup:
    """Parse an HTML fragment; its nodes end up under ``soup.body``."""
    return BeautifulSoup(f"<body>{markup or ''}</body>", "lxml")


def new_document() -> BeautifulSoup:
    return parse_fragment("")


def query(tree, selector: str) -> List[Tag]:
    return list(tree.select(selector))


def _prepare_for_xml(root: Tag) -> None:
    for node in list(root.descendants):
        if isinstance(node, (Comment, Declaration, Doctype, ProcessingInstruction, CData)):
            node.extract()
    for tag in root.find_all(True):
        if not _XML_NAME_RE.match(tag.name):
            tag.unwrap()
            continue
        for attr in list(tag.attrs):
            if not _XML_NAME_RE.match(attr):
                del tag.attrs[attr]
                continue
            value = tag.attrs[attr]
            if isinstance(value, list):
                tag.attrs[attr] = " ".join(value)


def serialize_xml(root: Tag) -> str:
    """Serialize ``root`` (and its subtree) as well-formed, ASCII-only XML."""
    _prepare_for_xml(root)
    return root.decode(formatter=XML_FORMATTER)
