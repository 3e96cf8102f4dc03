import io
import zipfile
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.main import app, get_library
from renderer.errors import ArchiveError, ExtractionError, FetchError

from conftest import ARTICLE_PAGE, ARTICLE_URL


@pytest.fixture
def client(library):
    app.dependency_overrides[get_library] = lambda: library
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def article(library):
    return library.add_article(
        {
            "url": ARTICLE_URL,
            "title": "Tom & Jerry: A <Tale>",
            "content": "<p>Rooftops are turning green.</p>",
            "byline": "Jane Doe",
        }
    )


class TestPages:
    def test_index(self, client, article):
        response = client.get("/")

        assert response.status_code == 200
        assert "Tom &amp; Jerry" in response.text

    def test_reader_view_sanitizes_stored_content(self, client, library):
        stored = library.add_article(
            {"url": ARTICLE_URL, "title": "Old import", "content": "<p>Hi</p><script>alert(1)</script>"}
        )

        response = client.get(f"/articles/{stored['id']}")

        assert response.status_code == 200
        assert "<p>Hi</p>" in response.text
        assert "alert(1)" not in response.text

    def test_index_keeps_selected_list_out_of_scripts(self, client):
        response = client.get("/", params={"list_id": "x'-alert(1)-'"})

        assert response.status_code == 200
        assert 'data-list-id="x&#39;-alert(1)-&#39;"' in response.text
        assert "list_id: '" not in response.text

    def test_reader_view_links_only_http_sources(self, client, library):
        stored = library.add_article({"url": "javascript:alert(1)", "title": "Odd", "content": "<p>Hi</p>"})

        response = client.get(f"/articles/{stored['id']}")

        assert response.status_code == 200
        assert "javascript:" not in response.text
        assert "Original" not in response.text

    def test_reader_view_links_source(self, client, article):
        response = client.get(f"/articles/{article['id']}")

        assert f'<a href="{ARTICLE_URL}">Original</a>' in response.text

    def test_reader_view_missing(self, client):
        assert client.get("/articles/missing").status_code == 404


class TestArticles:
    @patch("app.ingest.fetch_html", return_value=ARTICLE_PAGE)
    def test_save_article(self, fetch_html, client):
        response = client.post("/api/articles", json={"url": ARTICLE_URL})

        assert response.status_code == 201
        assert response.json()["title"] == "A Quiet Revolution in Urban Gardening"
        assert [item["url"] for item in client.get("/api/articles").json()] == [ARTICLE_URL]

    @pytest.mark.parametrize("payload", [{}, {"url": ""}, {"url": 42}])
    def test_save_requires_url(self, client, payload):
        assert client.post("/api/articles", json=payload).status_code == 400

    @patch("app.main.save_article", side_effect=FetchError("https://example.com returned HTTP 404"))
    def test_save_fetch_failure(self, save_article, client):
        response = client.post("/api/articles", json={"url": ARTICLE_URL})

        assert response.status_code == 502
        assert "404" in response.json()["detail"]

    @patch("app.main.save_article", side_effect=ExtractionError("No readable article content"))
    def test_save_extraction_failure(self, save_article, client):
        assert client.post("/api/articles", json={"url": ARTICLE_URL}).status_code == 422

    def test_save_into_unknown_list(self, client):
        response = client.post("/api/articles", json={"url": ARTICLE_URL, "list_id": "missing"})

        assert response.status_code == 404

    def test_get_article(self, client, article):
        response = client.get(f"/api/articles/{article['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == article["id"]
        assert client.get("/api/articles/missing").status_code == 404

    def test_update_article(self, client, library, article):
        work = library.create_list("Work")

        response = client.patch(f"/api/articles/{article['id']}", json={"listId": work["id"], "addTag": "science"})

        assert response.status_code == 204
        stored = library.get_article(article["id"])
        assert stored["list_id"] == work["id"]
        assert [tag["name"] for tag in stored["tags"]] == ["science"]

        tag_id = stored["tags"][0]["id"]
        client.patch(f"/api/articles/{article['id']}", json={"remove_tag": tag_id})
        assert library.get_article(article["id"])["tags"] == []

    def test_update_article_removes_tag_by_name(self, client, library, article):
        client.patch(f"/api/articles/{article['id']}", json={"add_tag": "science"})

        response = client.patch(f"/api/articles/{article['id']}", json={"remove_tag": "science"})

        assert response.status_code == 204
        assert library.get_article(article["id"])["tags"] == []

    def test_update_missing_article(self, client):
        assert client.patch("/api/articles/missing", json={"add_tag": "x"}).status_code == 404

    def test_delete_article(self, client, library, article):
        assert client.delete(f"/api/articles/{article['id']}").status_code == 204
        assert library.get_article(article["id"]) is None

    def test_delete_all_articles(self, client, library, article):
        assert client.delete("/api/articles").status_code == 204
        assert library.list_articles() == []


class TestEpubExport:
    def test_download(self, client, article):
        response = client.get(f"/api/articles/{article['id']}/export/epub")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/epub+zip"
        assert response.headers["content-disposition"] == 'attachment; filename="tom_jerry_a_tale.epub"'
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert archive.namelist()[0] == "mimetype"

    @patch("app.main.build_article_epub")
    def test_missing_article_builds_nothing(self, build, client):
        response = client.get("/api/articles/missing/export/epub")

        assert response.status_code == 404
        build.assert_not_called()

    @patch("app.main.build_article_epub", side_effect=ArchiveError("Could not write EPUB archive: disk full"))
    def test_archive_failure(self, build, client, article):
        response = client.get(f"/api/articles/{article['id']}/export/epub")

        assert response.status_code == 500
        assert response.json()["detail"].startswith("Failed to generate EPUB. Error: ")
        assert "disk full" in response.json()["detail"]


class TestListsAndTags:
    def test_lists(self, client, library):
        response = client.post("/api/lists", json={"name": " Work "})

        assert response.status_code == 201
        assert response.json()["name"] == "Work"
        assert [item["name"] for item in client.get("/api/lists").json()] == ["Reading List", "Work"]

    def test_list_name_required(self, client):
        assert client.post("/api/lists", json={"name": "  "}).status_code == 400

    def test_delete_list(self, client, library):
        work = library.create_list("Work")

        assert client.delete(f"/api/lists/{work['id']}").status_code == 204
        assert client.delete(f"/api/lists/{work['id']}").status_code == 404

    def test_default_list_cannot_be_deleted(self, client, library):
        response = client.delete(f"/api/lists/{library.default_list()['id']}")

        assert response.status_code == 409

    def test_make_default(self, client, library):
        work = library.create_list("Work")

        assert client.post(f"/api/lists/{work['id']}/default").status_code == 204
        assert library.default_list()["id"] == work["id"]
        assert client.post("/api/lists/missing/default").status_code == 404

    def test_tags(self, client):
        response = client.post("/api/tags", json={"name": "science"})

        assert response.status_code == 201
        assert client.get("/api/tags").json() == [response.json()]
        assert client.post("/api/tags", json={}).status_code == 400


class TestLibraryBackup:
    def test_export(self, client, article):
        response = client.get("/api/library/export")

        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith('attachment; filename="reader_library_export_')
        assert [item["id"] for item in response.json()["articles"]] == [article["id"]]

    def test_import(self, client, library):
        backup = {"articles": [{"id": "a1", "url": ARTICLE_URL, "content": "<p>x</p><script>y()</script>"}]}

        response = client.post("/api/library/import", json=backup)

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "imported": {"lists": 0, "tags": 0, "articles": 1, "article_tags": 0},
        }
        assert library.get_article("a1")["content"] == "<p>x</p>"

    @pytest.mark.parametrize(
        "entry",
        [
            {"title": "no id"},
            {"id": "a1", "url": "javascript:alert(1)"},
            {"id": "a1", "url": ARTICLE_URL, "createdAt": 10**20},
        ],
    )
    def test_import_rejects_malformed_backup(self, client, library, entry):
        response = client.post("/api/library/import", json={"articles": [entry]})

        assert response.status_code == 400
        assert library.list_articles() == []
