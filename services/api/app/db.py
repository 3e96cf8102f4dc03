import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Mapping, Optional

from renderer import sanitize_html
from renderer.errors import ArticleNotFound, NotFound
from renderer.fetcher import is_http_url
from renderer.settings import local_tz, now_local

logger = logging.getLogger(__name__)

DEFAULT_LIST_NAME = "Reading List"

# Keys used by backups of the original reader, mapped to column names.
_CAMEL_KEYS = {
    "textContent": "text_content",
    "siteName": "site_name",
    "publishedTime": "published_time",
    "createdAt": "created_at",
    "listId": "list_id",
    "isDefault": "is_default",
    "articleId": "article_id",
    "tagId": "tag_id",
}


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return now_local().isoformat()


def _snake(record: Mapping) -> dict:
    if not isinstance(record, Mapping):
        raise ValueError("Library backup entries must be objects")
    return {_CAMEL_KEYS.get(key, key): value for key, value in record.items()}


def _timestamp(value) -> str:
    if value is None or value == "":
        return _now()
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, local_tz()).isoformat()
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    return str(value)


class Library:
    """SQLite-backed store for articles, lists and tags.

    Construct one per process and call ``init_db`` once before use.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS lists (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tags (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS articles (
                    id TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    text_content TEXT,
                    excerpt TEXT,
                    byline TEXT,
                    site_name TEXT,
                    published_time TEXT,
                    list_id TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(list_id) REFERENCES lists(id)
                );

                CREATE TABLE IF NOT EXISTS article_tags (
                    article_id TEXT NOT NULL,
                    tag_id TEXT NOT NULL,
                    PRIMARY KEY (article_id, tag_id),
                    FOREIGN KEY(article_id) REFERENCES articles(id) ON DELETE CASCADE,
                    FOREIGN KEY(tag_id) REFERENCES tags(id) ON DELETE CASCADE
                );
                """
            )
            _ensure_list_columns(conn)
            _ensure_default_list(conn)

    # --- Articles ---

    def add_article(self, record: Mapping, list_id: Optional[str] = None) -> dict:
        article_id = _new_id()
        with self.connect() as conn:
            target_list = _resolve_list(conn, list_id)
            conn.execute(
                """
                INSERT INTO articles (
                    id, url, title, content, text_content, excerpt,
                    byline, site_name, published_time, list_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    article_id,
                    record["url"],
                    record.get("title") or "Untitled",
                    record.get("content") or "",
                    record.get("text_content") or "",
                    record.get("excerpt") or "",
                    record.get("byline") or "",
                    record.get("site_name") or "",
                    record.get("published_time") or "",
                    target_list,
                    _now(),
                ),
            )
        return self.get_article(article_id)

    def get_article(self, article_id: str) -> Optional[dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
            if not row:
                return None
            article = dict(row)
            article["tags"] = _article_tags(conn, article_id)
        return article

    def list_articles(self, list_id: Optional[str] = None, tag: Optional[str] = None) -> List[dict]:
        query = "SELECT articles.* FROM articles"
        clauses = []
        params: list = []
        if tag:
            query += (
                " JOIN article_tags ON article_tags.article_id = articles.id"
                " JOIN tags ON tags.id = article_tags.tag_id"
            )
            clauses.append("tags.name = ?")
            params.append(tag)
        if list_id:
            clauses.append("articles.list_id = ?")
            params.append(list_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY articles.created_at DESC, articles.rowid DESC"
        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
            articles = []
            for row in rows:
                article = dict(row)
                article["tags"] = _article_tags(conn, article["id"])
                articles.append(article)
        return articles

    def delete_article(self, article_id: str) -> bool:
        with self.connect() as conn:
            cursor = conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
        return cursor.rowcount > 0

    def delete_all_articles(self) -> int:
        with self.connect() as conn:
            cursor = conn.execute("DELETE FROM articles")
        return cursor.rowcount

    def move_article(self, article_id: str, list_id: str) -> None:
        with self.connect() as conn:
            _require_article(conn, article_id)
            target_list = _resolve_list(conn, list_id)
            conn.execute("UPDATE articles SET list_id = ? WHERE id = ?", (target_list, article_id))

    # --- Lists ---

    def get_lists(self) -> List[dict]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM lists ORDER BY position ASC, created_at ASC").fetchall()
        return [_list_dict(row) for row in rows]

    def get_list(self, list_id: str) -> Optional[dict]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM lists WHERE id = ?", (list_id,)).fetchone()
        return _list_dict(row) if row else None

    def default_list(self) -> dict:
        with self.connect() as conn:
            _ensure_default_list(conn)
            row = conn.execute("SELECT * FROM lists WHERE is_default = 1").fetchone()
        return _list_dict(row)

    def create_list(self, name: str) -> dict:
        list_id = _new_id()
        with self.connect() as conn:
            max_pos = conn.execute("SELECT MAX(position) AS max_pos FROM lists").fetchone()["max_pos"]
            position = (max_pos if max_pos is not None else -1) + 1
            conn.execute(
                "INSERT INTO lists (id, name, position, created_at, is_default) VALUES (?, ?, ?, ?, 0)",
                (list_id, name, position, _now()),
            )
        return {"id": list_id, "name": name, "position": position, "is_default": False}

    def set_default_list(self, list_id: str) -> None:
        with self.connect() as conn:
            _require_list(conn, list_id)
            conn.execute("UPDATE lists SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END", (list_id,))

    def delete_list(self, list_id: str) -> None:
        with self.connect() as conn:
            row = _require_list(conn, list_id)
            if row["is_default"]:
                raise ValueError("The default list cannot be deleted")
            default_id = conn.execute("SELECT id FROM lists WHERE is_default = 1").fetchone()["id"]
            conn.execute("UPDATE articles SET list_id = ? WHERE list_id = ?", (default_id, list_id))
            conn.execute("DELETE FROM lists WHERE id = ?", (list_id,))

    # --- Tags ---

    def get_tags(self) -> List[dict]:
        with self.connect() as conn:
            rows = conn.execute("SELECT id, name FROM tags ORDER BY name ASC").fetchall()
        return [dict(row) for row in rows]

    def create_tag(self, name: str) -> dict:
        with self.connect() as conn:
            return _get_or_create_tag(conn, name)

    def add_tag_to_article(self, article_id: str, tag_name: str) -> dict:
        with self.connect() as conn:
            _require_article(conn, article_id)
            tag = _get_or_create_tag(conn, tag_name)
            conn.execute(
                "INSERT OR IGNORE INTO article_tags (article_id, tag_id) VALUES (?, ?)",
                (article_id, tag["id"]),
            )
        return tag

    def remove_tag_from_article(self, article_id: str, tag: str) -> None:
        """Detach ``tag`` (a tag id or a tag name) from the article."""
        with self.connect() as conn:
            conn.execute(
                """
                DELETE FROM article_tags
                WHERE article_id = ?
                  AND (tag_id = ? OR tag_id IN (SELECT id FROM tags WHERE name = ?))
                """,
                (article_id, tag, tag),
            )

    # --- Backup ---

    def export_library(self) -> dict:
        with self.connect() as conn:
            lists = [_list_dict(row) for row in conn.execute("SELECT * FROM lists ORDER BY position ASC")]
            tags = [dict(row) for row in conn.execute("SELECT * FROM tags ORDER BY name ASC")]
            articles = [dict(row) for row in conn.execute("SELECT * FROM articles ORDER BY created_at ASC")]
            links = [dict(row) for row in conn.execute("SELECT * FROM article_tags ORDER BY article_id, tag_id")]
        return {"lists": lists, "tags": tags, "articles": articles, "article_tags": links}

    def import_library(self, data: Mapping) -> dict:
        """Upsert a backup produced by ``export_library`` (or the original reader).

        Article content is sanitized on the way in; the whole import is one
        transaction.
        """
        if not isinstance(data, Mapping):
            raise ValueError("Library backup must be a JSON object")
        lists = [_snake(item) for item in data.get("lists") or []]
        tags = [_snake(item) for item in data.get("tags") or []]
        articles = [_snake(item) for item in data.get("articles") or []]
        links = [_snake(item) for item in (data.get("article_tags") or data.get("articleTags") or [])]

        with self.connect() as conn:
            for item in lists:
                if not item.get("id") or not item.get("name"):
                    raise ValueError("Every list needs an id and a name")
                conn.execute(
                    """
                    INSERT INTO lists (id, name, position, created_at, is_default)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        position = excluded.position,
                        is_default = excluded.is_default
                    """,
                    (
                        item["id"],
                        item["name"],
                        int(item.get("position") or 0),
                        _timestamp(item.get("created_at")),
                        1 if item.get("is_default") else 0,
                    ),
                )
            backup_default = next((item["id"] for item in lists if item.get("is_default")), None)
            if backup_default:
                _replace_default_list(conn, backup_default, {item["id"] for item in lists})
            _ensure_default_list(conn)
            default_id = conn.execute("SELECT id FROM lists WHERE is_default = 1").fetchone()["id"]

            # Tag names are unique; a backup tag whose name already exists maps onto it.
            tag_ids = {}
            for item in tags:
                if not item.get("id") or not item.get("name"):
                    raise ValueError("Every tag needs an id and a name")
                existing = conn.execute("SELECT id FROM tags WHERE name = ?", (item["name"],)).fetchone()
                if existing:
                    tag_ids[item["id"]] = existing["id"]
                    continue
                conn.execute(
                    "INSERT INTO tags (id, name, created_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET name = excluded.name",
                    (item["id"], item["name"], _timestamp(item.get("created_at"))),
                )
                tag_ids[item["id"]] = item["id"]

            for item in articles:
                if not item.get("id") or not item.get("url"):
                    raise ValueError("Every article needs an id and a url")
                if not isinstance(item["url"], str) or not is_http_url(item["url"]):
                    raise ValueError(f"Article {item['id']} has a non-http(s) url")
                list_id = item.get("list_id")
                if not list_id or not _list_exists(conn, list_id):
                    list_id = default_id
                conn.execute(
                    """
                    INSERT INTO articles (
                        id, url, title, content, text_content, excerpt,
                        byline, site_name, published_time, list_id, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        url = excluded.url,
                        title = excluded.title,
                        content = excluded.content,
                        text_content = excluded.text_content,
                        excerpt = excluded.excerpt,
                        byline = excluded.byline,
                        site_name = excluded.site_name,
                        published_time = excluded.published_time,
                        list_id = excluded.list_id,
                        created_at = excluded.created_at
                    """,
                    (
                        item["id"],
                        item["url"],
                        item.get("title") or "Untitled",
                        sanitize_html(item.get("content") or ""),
                        item.get("text_content") or "",
                        item.get("excerpt") or "",
                        item.get("byline") or "",
                        item.get("site_name") or "",
                        item.get("published_time") or "",
                        list_id,
                        _timestamp(item.get("created_at")),
                    ),
                )

            linked = 0
            for item in links:
                article_id = item.get("article_id")
                tag_id = tag_ids.get(item.get("tag_id"), item.get("tag_id"))
                if not article_id or not tag_id:
                    continue
                if not _row_exists(conn, "articles", article_id) or not _row_exists(conn, "tags", tag_id):
                    logger.warning("Skipping tag link %s/%s with missing side", article_id, tag_id)
                    continue
                conn.execute(
                    "INSERT OR IGNORE INTO article_tags (article_id, tag_id) VALUES (?, ?)",
                    (article_id, tag_id),
                )
                linked += 1

        counts = {"lists": len(lists), "tags": len(tags), "articles": len(articles), "article_tags": linked}
        logger.info("Imported library backup: %s", counts)
        return counts


def _ensure_list_columns(conn: sqlite3.Connection) -> None:
    existing = {row["name"] for row in conn.execute("PRAGMA table_info(lists)").fetchall()}
    if "is_default" not in existing:
        conn.execute("ALTER TABLE lists ADD COLUMN is_default INTEGER NOT NULL DEFAULT 0")


def _ensure_default_list(conn: sqlite3.Connection) -> None:
    defaults = conn.execute(
        "SELECT id FROM lists WHERE is_default = 1 ORDER BY position ASC, created_at ASC"
    ).fetchall()
    if len(defaults) == 1:
        return
    if len(defaults) > 1:
        conn.execute("UPDATE lists SET is_default = 0 WHERE id != ?", (defaults[0]["id"],))
        return
    first = conn.execute("SELECT id FROM lists ORDER BY position ASC, created_at ASC LIMIT 1").fetchone()
    if first:
        conn.execute("UPDATE lists SET is_default = 1 WHERE id = ?", (first["id"],))
        return
    conn.execute(
        "INSERT INTO lists (id, name, position, created_at, is_default) VALUES (?, ?, 0, ?, 1)",
        (_new_id(), DEFAULT_LIST_NAME, _now()),
    )


def _replace_default_list(conn: sqlite3.Connection, default_id: str, backup_ids: set) -> None:
    # An untouched seeded default is dropped; any other previous default is demoted.
    previous = conn.execute("SELECT id, name FROM lists WHERE is_default = 1 AND id != ?", (default_id,)).fetchall()
    for row in previous:
        unused = not conn.execute("SELECT 1 FROM articles WHERE list_id = ? LIMIT 1", (row["id"],)).fetchone()
        if row["name"] == DEFAULT_LIST_NAME and row["id"] not in backup_ids and unused:
            conn.execute("DELETE FROM lists WHERE id = ?", (row["id"],))
        else:
            conn.execute("UPDATE lists SET is_default = 0 WHERE id = ?", (row["id"],))


def _list_dict(row: sqlite3.Row) -> dict:
    item = dict(row)
    item["is_default"] = bool(item.get("is_default"))
    return item


def _row_exists(conn: sqlite3.Connection, table: str, row_id: str) -> bool:
    return conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (row_id,)).fetchone() is not None


def _list_exists(conn: sqlite3.Connection, list_id: str) -> bool:
    return _row_exists(conn, "lists", list_id)


def _require_list(conn: sqlite3.Connection, list_id: str) -> sqlite3.Row:
    row = conn.execute("SELECT * FROM lists WHERE id = ?", (list_id,)).fetchone()
    if not row:
        raise NotFound(f"List not found: {list_id}")
    return row


def _require_article(conn: sqlite3.Connection, article_id: str) -> None:
    if not _row_exists(conn, "articles", article_id):
        raise ArticleNotFound(article_id)


def _resolve_list(conn: sqlite3.Connection, list_id: Optional[str]) -> str:
    if list_id:
        return _require_list(conn, list_id)["id"]
    _ensure_default_list(conn)
    return conn.execute("SELECT id FROM lists WHERE is_default = 1").fetchone()["id"]


def _get_or_create_tag(conn: sqlite3.Connection, name: str) -> dict:
    existing = conn.execute("SELECT id, name FROM tags WHERE name = ?", (name,)).fetchone()
    if existing:
        return dict(existing)
    tag_id = _new_id()
    conn.execute("INSERT INTO tags (id, name, created_at) VALUES (?, ?, ?)", (tag_id, name, _now()))
    return {"id": tag_id, "name": name}


def _article_tags(conn: sqlite3.Connection, article_id: str) -> List[dict]:
    rows = conn.execute(
        """
        SELECT tags.id, tags.name FROM tags
        JOIN article_tags ON tags.id = article_tags.tag_id
        WHERE article_tags.article_id = ?
        ORDER BY tags.name ASC
        """,
        (article_id,),
    ).fetchall()
    return [dict(row) for row in rows]
