import re

import bleach
from bleach.css_sanitizer import CSSSanitizer

ALLOWED_TAGS = bleach.sanitizer.ALLOWED_TAGS.union(
    {
        "article",
        "section",
        "header",
        "footer",
        "main",
        "aside",
        "figure",
        "figcaption",
        "img",
        "div",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "p",
        "pre",
        "code",
        "blockquote",
        "q",
        "cite",
        "hr",
        "br",
        "span",
        "sub",
        "sup",
        "small",
        "mark",
        "del",
        "ins",
        "s",
        "u",
        "time",
        "dl",
        "dt",
        "dd",
        "table",
        "caption",
        "thead",
        "tbody",
        "tfoot",
        "tr",
        "th",
        "td",
    }
)

ALLOWED_ATTRS = {
    "*": ["style", "title"],
    "img": ["src", "alt"],
    "a": ["href"],
    "td": ["colspan", "rowspan"],
    "th": ["colspan", "rowspan", "scope"],
    "time": ["datetime"],
    "blockquote": ["cite"],
    "q": ["cite"],
}

ALLOWED_PROTOCOLS = ["http", "https", "mailto"]

SAFE_CSS_PROPERTIES = [
    "color",
    "background-color",
    "font-style",
    "font-weight",
    "font-variant",
    "text-align",
    "text-decoration",
    "text-indent",
    "text-transform",
    "vertical-align",
    "white-space",
    "margin-left",
    "margin-right",
    "padding-left",
    "padding-right",
]

CSS_SANITIZER = CSSSanitizer(allowed_css_properties=SAFE_CSS_PROPERTIES)

# Dropped together with everything inside them; other disallowed tags keep their text.
_DROP_WITH_CONTENT_RE = re.compile(
    r"<(script|style|noscript|template|iframe|object|embed|form|select|textarea|button)\b[^>]*>.*?</\1\s*>",
    flags=re.IGNORECASE | re.DOTALL,
)


def sanitize_html(html: str) -> str:
    if not html:
        return ""
    pre = _DROP_WITH_CONTENT_RE.sub("", html)
    return bleach.clean(
        pre,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRS,
        protocols=ALLOWED_PROTOCOLS,
        css_sanitizer=CSS_SANITIZER,
        strip=True,
        strip_comments=True,
    )
