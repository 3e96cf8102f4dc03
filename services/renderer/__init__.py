from .epub import build_article_epub, epub_filename, normalize_entities
from .errors import (
    ArchiveError,
    ArticleNotFound,
    ExportCancelled,
    ExtractionError,
    FetchError,
    ImageFetchError,
    NotFound,
    ReaderError,
)
from .extractor import ExtractedArticle, extract_article
from .fetcher import fetch_html
from .sanitizer import sanitize_html

__all__ = [
    "ArchiveError",
    "ArticleNotFound",
    "ExportCancelled",
    "ExtractedArticle",
    "ExtractionError",
    "FetchError",
    "ImageFetchError",
    "NotFound",
    "ReaderError",
    "build_article_epub",
    "epub_filename",
    "extract_article",
    "fetch_html",
    "normalize_entities",
    "sanitize_html",
]
