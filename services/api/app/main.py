import asyncio
import json
import logging
import os
import threading
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, Response
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool

from app.db import Library
from app.ingest import save_article
from renderer import (
    ArchiveError,
    ExportCancelled,
    ExtractionError,
    FetchError,
    NotFound,
    build_article_epub,
    epub_filename,
    sanitize_html,
)
from renderer.fetcher import is_http_url
from renderer.settings import db_path, log_level, now_local

logger = logging.getLogger(__name__)

app = FastAPI()

TEMPLATES = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))
DISCONNECT_POLL_SECONDS = 0.5


def get_library(request: Request) -> Library:
    return request.app.state.library


def _article_or_404(library: Library, article_id: str) -> dict:
    article = library.get_article(article_id)
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


@app.on_event("startup")
def startup():
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    path = db_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    library = Library(path)
    library.init_db()
    app.state.library = library
    logger.info("Library ready at %s", path)


@app.get("/", response_class=HTMLResponse)
def index(request: Request, list_id: str = None, library: Library = Depends(get_library)):
    lists = library.get_lists()
    selected = list_id or next((item["id"] for item in lists if item["is_default"]), None)
    articles = library.list_articles(list_id=selected)
    return TEMPLATES.TemplateResponse(
        request,
        "index.html",
        {"lists": lists, "selected": selected, "articles": articles, "tags": library.get_tags()},
    )


@app.get("/articles/{article_id}", response_class=HTMLResponse)
def article_view(request: Request, article_id: str, library: Library = Depends(get_library)):
    article = _article_or_404(library, article_id)
    # Stored content may predate ingestion sanitizing (imports), so clean it again.
    article["content"] = sanitize_html(article["content"])
    source_url = article["url"] if is_http_url(article["url"]) else None
    return TEMPLATES.TemplateResponse(request, "article.html", {"article": article, "source_url": source_url})


@app.post("/api/articles", status_code=201)
def create_article(payload: dict, library: Library = Depends(get_library)):
    url = payload.get("url")
    if not url or not isinstance(url, str):
        raise HTTPException(status_code=400, detail="URL is required")
    try:
        article = save_article(library, url, list_id=payload.get("list_id"))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except FetchError as exc:
        logger.warning("Fetch failed for %s: %s", url, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ExtractionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return article


@app.get("/api/articles")
def list_articles(list_id: str = None, tag: str = None, library: Library = Depends(get_library)):
    return library.list_articles(list_id=list_id, tag=tag)


@app.delete("/api/articles", status_code=204)
def clear_articles(library: Library = Depends(get_library)):
    removed = library.delete_all_articles()
    logger.info("Deleted %d article(s)", removed)
    return Response(status_code=204)


@app.get("/api/articles/{article_id}")
def get_article(article_id: str, library: Library = Depends(get_library)):
    return _article_or_404(library, article_id)


@app.patch("/api/articles/{article_id}", status_code=204)
def update_article(article_id: str, payload: dict, library: Library = Depends(get_library)):
    _article_or_404(library, article_id)
    list_id = payload.get("list_id") or payload.get("listId")
    add_tag = payload.get("add_tag") or payload.get("addTag")
    remove_tag = payload.get("remove_tag") or payload.get("removeTag")
    try:
        if list_id:
            library.move_article(article_id, list_id)
        if add_tag:
            library.add_tag_to_article(article_id, str(add_tag).strip())
        if remove_tag:
            library.remove_tag_from_article(article_id, str(remove_tag).strip())
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.delete("/api/articles/{article_id}", status_code=204)
def delete_article(article_id: str, library: Library = Depends(get_library)):
    library.delete_article(article_id)
    return Response(status_code=204)


@app.get("/api/articles/{article_id}/export/epub")
async def export_epub(article_id: str, request: Request, library: Library = Depends(get_library)):
    article = await run_in_threadpool(_article_or_404, library, article_id)
    cancel = threading.Event()
    build = asyncio.ensure_future(run_in_threadpool(build_article_epub, article, cancel=cancel))
    while not build.done():
        done, _ = await asyncio.wait({build}, timeout=DISCONNECT_POLL_SECONDS)
        if not done and await request.is_disconnected():
            logger.info("Client went away, cancelling EPUB export of %s", article_id)
            cancel.set()
    try:
        payload = build.result()
    except ExportCancelled:
        return Response(status_code=499)
    except ArchiveError as exc:
        logger.error("EPUB export of %s failed: %s", article_id, exc)
        raise HTTPException(status_code=500, detail=f"Failed to generate EPUB. Error: {exc}") from exc
    filename = epub_filename(article.get("title"))
    return Response(
        content=payload,
        media_type="application/epub+zip",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/lists")
def list_lists(library: Library = Depends(get_library)):
    return library.get_lists()


@app.post("/api/lists", status_code=201)
def create_list(payload: dict, library: Library = Depends(get_library)):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    return library.create_list(name)


@app.delete("/api/lists/{list_id}", status_code=204)
def delete_list(list_id: str, library: Library = Depends(get_library)):
    try:
        library.delete_list(list_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/lists/{list_id}/default", status_code=204)
def make_default_list(list_id: str, library: Library = Depends(get_library)):
    try:
        library.set_default_list(list_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/tags")
def list_tags(library: Library = Depends(get_library)):
    return library.get_tags()


@app.post("/api/tags", status_code=201)
def create_tag(payload: dict, library: Library = Depends(get_library)):
    name = (payload.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")
    return library.create_tag(name)


@app.get("/api/library/export")
def export_library(library: Library = Depends(get_library)):
    data = library.export_library()
    filename = f"reader_library_export_{now_local().date().isoformat()}.json"
    return Response(
        content=json.dumps(data, ensure_ascii=True, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/library/import")
def import_library(payload: dict, library: Library = Depends(get_library)):
    try:
        counts = library.import_library(payload)
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Failed to import library: {exc}") from exc
    return {"status": "ok", "imported": counts}
