#!/usr/bin/env python3
"""
Save a single web article as an EPUB without touching the library database.

Pipeline:
  1) Fetch the page with a browser User-Agent
  2) Extract the main article (readability)
  3) Sanitize the content
  4) Build the EPUB, downloading images on the way
"""

from __future__ import annotations

import argparse
import functools
import logging
import sys
import uuid
from pathlib import Path

from renderer import ReaderError, build_article_epub, epub_filename, extract_article, fetch_html, sanitize_html
from renderer.fetcher import make_session
from renderer.images import download_image
from renderer.settings import now_local


def main() -> int:
    ap = argparse.ArgumentParser(description="Convert a web article to EPUB")
    ap.add_argument("url", help="Article URL")
    ap.add_argument("--out", default=None, help="Output .epub path (default: derived from the title)")
    ap.add_argument("--verbose", action="store_true", help="Log image downloads and other details")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    session = make_session()
    try:
        raw_html = fetch_html(args.url, session=session)
        extracted = extract_article(raw_html, args.url)
        article = extracted.to_dict()
        article["id"] = str(uuid.uuid4())
        article["title"] = extracted.title or "Untitled"
        article["content"] = sanitize_html(extracted.content)
        article["created_at"] = now_local().isoformat()
        payload = build_article_epub(article, fetch_image=functools.partial(download_image, session=session))
    except ReaderError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    out = Path(args.out) if args.out else Path(epub_filename(article["title"]))
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(payload)
    print(f"Wrote {out} ({len(payload)} bytes)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
