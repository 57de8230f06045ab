from urllib.error import HTTPError, URLError

import pytest

from newsharvest import ingest
from newsharvest.errors import ExternalCallError, ValidationFailure
from newsharvest.ingest import (
    FeedExtractor,
    HtmlListingExtractor,
    SourceKindExtractor,
    UrlPageFetcher,
    extract_readable_text,
)
from newsharvest.models import SourceDescriptor

RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>BioBio</title>
    <item>
      <title>Gobierno anuncia nueva reforma tributaria</title>
      <link>https://www.biobiochile.cl/noticias/nacional/reforma</link>
      <description>&lt;p&gt;El Ejecutivo presentó &lt;b&gt;hoy&lt;/b&gt; su proyecto.&lt;/p&gt;</description>
      <author>prensa@biobiochile.cl (Equipo BioBio)</author>
      <pubDate>Tue, 10 Jun 2025 04:00:00 GMT</pubDate>
    </item>
    <item>
      <title></title>
      <guid>https://www.biobiochile.cl/noticias/2</guid>
    </item>
  </channel>
</rss>
"""

LISTING = """
<html><body>
  <nav><a href="/portada">Portada</a></nav>
  <article>
    <h2><a href="/economia/dolar-al-alza">Dólar cierra al alza</a></h2>
    <p>El tipo de cambio subió por tercera jornada.</p>
  </article>
  <h3><a href="https://www.df.cl/mercados/ipsa">IPSA retrocede</a></h3>
  <h3><a href="https://publicidad.example.com/promo">Promo</a></h3>
  <h2><a href="mailto:editor@df.cl">Escríbenos</a></h2>
</body></html>
"""


def _source(kind="rss", target="https://www.biobiochile.cl/rss"):
    return SourceDescriptor(id="src", target=target, kind=kind, domain="biobiochile.cl")


def test_feed_extractor_reads_entries():
    articles = FeedExtractor().extract(RSS, _source())

    assert len(articles) == 2
    first = articles[0]
    assert first.title == "Gobierno anuncia nueva reforma tributaria"
    assert first.link == "https://www.biobiochile.cl/noticias/nacional/reforma"
    assert first.summary == "El Ejecutivo presentó hoy su proyecto."
    assert first.body == first.summary
    assert first.published_at == "2025-06-10T04:00:00+00:00"
    assert articles[1].title == ""
    assert articles[1].link == "https://www.biobiochile.cl/noticias/2"


def test_listing_extractor_keeps_same_host_headlines():
    articles = HtmlListingExtractor().extract(LISTING, _source("html", "https://www.df.cl/"))

    assert [a.link for a in articles] == [
        "https://www.df.cl/economia/dolar-al-alza",
        "https://www.df.cl/mercados/ipsa",
    ]
    assert articles[0].title == "Dólar cierra al alza"
    assert articles[0].summary == "El tipo de cambio subió por tercera jornada."
    assert articles[1].summary is None
    assert all(a.body == "" for a in articles)


def test_source_kind_dispatch():
    extractor = SourceKindExtractor()

    assert len(extractor.extract(RSS, _source("rss"))) == 2
    with pytest.raises(ValidationFailure):
        extractor.extract(RSS, _source("json"))


def test_readable_text_prefers_article_and_drops_boilerplate():
    html = """
    <html><body>
      <header>Menú</header>
      <div>Barra lateral corta</div>
      <article><h1>Título</h1><script>track()</script><p>Cuerpo   de la nota.</p></article>
    </body></html>
    """
    assert extract_readable_text(html) == "Título Cuerpo de la nota."
    assert extract_readable_text("") == ""
    head_only = "<html><head><title>Inicio</title></head><body></body></html>"
    assert extract_readable_text(head_only) == ""


class FakeHeaders:
    def get_content_charset(self):
        return "latin-1"


class FakeResponse:
    headers = FakeHeaders()

    def __init__(self, body):
        self.body = body

    def read(self):
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_fetcher_retries_network_errors(monkeypatch):
    outcomes = [URLError("dns"), TimeoutError("slow"), FakeResponse("canción".encode("latin-1"))]
    requests = []

    def fake_urlopen(request, timeout):
        requests.append((request.full_url, request.get_header("User-agent"), timeout))
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(ingest, "urlopen", fake_urlopen)
    sleeps = []
    fetcher = UrlPageFetcher(timeout_seconds=5, user_agent="test-agent", backoff_seconds=2.0, sleep=sleeps.append)

    assert fetcher.fetch("https://www.df.cl/") == "canción"
    assert sleeps == [2.0, 4.0]
    assert requests[0] == ("https://www.df.cl/", "test-agent", 5)


def test_fetcher_gives_up(monkeypatch):
    calls = []

    def http_error(request, timeout):
        calls.append(1)
        raise HTTPError(request.full_url, 404, "Not Found", None, None)

    monkeypatch.setattr(ingest, "urlopen", http_error)
    with pytest.raises(ExternalCallError, match="http_error 404"):
        UrlPageFetcher(sleep=lambda s: None).fetch("https://www.df.cl/missing")
    assert len(calls) == 1

    def down(request, timeout):
        raise URLError("refused")

    monkeypatch.setattr(ingest, "urlopen", down)
    with pytest.raises(ExternalCallError, match="network_error"):
        UrlPageFetcher(max_retries=1, sleep=lambda s: None).fetch("https://www.df.cl/")
