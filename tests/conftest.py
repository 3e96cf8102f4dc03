import pytest

from app.db import Library
from renderer.errors import ImageFetchError
from renderer.images import FetchedImage

ARTICLE_URL = "https://example.com/2024/03/urban-gardening"

PARAGRAPHS = [
    "Across the city, rooftops that once held nothing but gravel and air-conditioning units are "
    "being turned into vegetable plots, and the people tending them say the change is bigger than it looks.",
    "The movement started with a handful of neighbours who pooled money for soil and seedlings. "
    "Within two summers, the building association had approved planters on every flat roof it owned.",
    "Researchers at the local university have been measuring the effect on household diets, and "
    "their early numbers suggest families with access to a plot eat noticeably more fresh produce.",
    "Not everyone is convinced. Some landlords worry about water damage and insurance, while "
    "others point out that the plots are often claimed by the residents who need them least.",
    "Still, the waiting list keeps growing, and the city is drafting rules that would make "
    "rooftop gardens a standard option for new residential buildings. <a href=\"/related\">Related</a>",
]

ARTICLE_PAGE = (
    """<!DOCTYPE html>
<html>
<head>
  <title>A Quiet Revolution in Urban Gardening | Example News</title>
  <meta property="og:site_name" content="Example News">
  <meta name="author" content="Jane Doe">
  <meta property="article:published_time" content="2024-03-05T10:00:00Z">
  <meta name="description" content="How rooftop plots are changing city diets.">
  <script>var tracking = true;</script>
  <style>body { color: red; }</style>
</head>
<body>
  <div id="header" class="menu">
    <ul>
      <li><a href="/">Home</a></li>
      <li><a href="/world">World</a></li>
      <li><a href="/subscribe">Subscribe to our newsletter</a></li>
    </ul>
  </div>
  <div class="article-body">
    <h1>A Quiet Revolution in Urban Gardening</h1>
"""
    + "\n".join(f"    <p>{text}</p>" for text in PARAGRAPHS)
    + """
  </div>
  <div id="footer"><p>Copyright 2024 Example News. All rights reserved.</p></div>
</body>
</html>
"""
)

NAV_ONLY_PAGE = """<!DOCTYPE html>
<html>
<head><title>Sign in</title></head>
<body>
  <div class="menu"><a href="/">Home</a> <a href="/login">Log in</a> <a href="/help">Help</a></div>
  <p>Please sign in.</p>
</body>
</html>
"""


class FakeImageFetcher:
    """Stands in for ``download_image``: maps URLs to results, anything else fails."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        result = self.responses.get(url)
        if result is None:
            raise ImageFetchError("HTTP 404")
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def library(tmp_path):
    lib = Library(str(tmp_path / "reader.db"))
    lib.init_db()
    return lib


@pytest.fixture
def fake_fetcher():
    return FakeImageFetcher


@pytest.fixture
def png():
    return FetchedImage(data=b"\x89PNG\r\n\x1a\nfake", content_type="image/png")


@pytest.fixture
def stored_article():
    return {
        "id": "0b6c3f0e-8d0a-4c8e-9a55-2b7d0f0c1a11",
        "url": ARTICLE_URL,
        "title": "A Quiet Revolution in Urban Gardening",
        "byline": "Jane Doe",
        "site_name": "Example News",
        "created_at": "2024-03-05T10:00:00+00:00",
        "content": "<p>Rooftops are turning green.</p>",
    }


@pytest.fixture(autouse=True)
def utc(monkeypatch):
    monkeypatch.setenv("TZ", "UTC")
