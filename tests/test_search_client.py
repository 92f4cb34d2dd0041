import httpx
import pytest
import respx
from httpx import Response

from gateway.cache import TTLCache
from gateway.credentials import CredentialSource
from gateway.schemas import DateWindow
from gateway.search import (
    SEARCH_URL,
    GoogleSearchClient,
    extract_date,
    extract_page_text,
    trim_snippet,
    truncate_text,
)


CREDS = {"GOOGLE_SEARCH_API_KEY": "search-key", "GOOGLE_SEARCH_CX": "cx-id"}

ITEMS = {
    "items": [
        {
            "title": "<b>Bitcoin</b>   price today",
            "link": "https://prices.test/btc",
            "snippet": "Oct 16, 2026 — BTC trades\nhigher.",
            "pagemap": {"metatags": [{"article:published_time": "2026-10-16T08:30:00Z"}]},
        },
        {"title": "No link", "link": ""},
        {"title": "Second", "link": "https://news.test/a", "snippet": "Oct 15, 2026 — markets move."},
    ]
}

PAGE = """
<html><head><title>t</title><style>body{}</style><script>var x = 1;</script></head>
<body><nav>Home | About</nav><header>Site header</header>
<article><p>Bitcoin rose sharply.</p><p>Analysts expect more volatility.</p></article>
<footer>Copyright</footer></body></html>
"""


@pytest.mark.asyncio
async def test_search_sends_query_params_and_parses_items():
    client = GoogleSearchClient(CredentialSource(env=CREDS))
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["params"] = dict(request.url.params)
                return Response(200, json=ITEMS)

            respx_mock.get(SEARCH_URL).mock(side_effect=handler)
            results = await client.search("bitcoin price", count=20, date_window=DateWindow.DAY, fetch_pages=False)
        assert captured["params"] == {
            "key": "search-key",
            "cx": "cx-id",
            "q": "bitcoin price",
            "num": "10",
            "dateRestrict": "d1",
        }
        assert [r.title for r in results] == ["Bitcoin price today", "Second"]
        assert results[0].snippet == "Oct 16, 2026 — BTC trades higher."
        assert results[0].date == "2026-10-16"
        assert results[1].date == "Oct 15, 2026"
        assert results[0].page_content is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_fetches_page_excerpts_for_top_results():
    client = GoogleSearchClient(CredentialSource(env=CREDS), page_fetch_count=1)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(SEARCH_URL).mock(return_value=Response(200, json=ITEMS))
            respx_mock.get("https://prices.test/btc").mock(
                return_value=Response(200, text=PAGE, headers={"Content-Type": "text/html; charset=utf-8"})
            )
            results = await client.search("bitcoin price")
        excerpt = results[0].page_content
        assert "Bitcoin rose sharply. Analysts expect more volatility." in excerpt
        assert "Site header" not in excerpt
        assert "Copyright" not in excerpt
        assert results[1].page_content is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_page_fetch_skips_binary_content_and_failures():
    client = GoogleSearchClient(CredentialSource(env=CREDS))
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://files.test/report.pdf").mock(
                return_value=Response(200, content=b"%PDF-1.4", headers={"Content-Type": "application/pdf"})
            )
            respx_mock.get("https://slow.test/").mock(side_effect=httpx.ReadTimeout("slow"))
            respx_mock.get("https://gone.test/").mock(return_value=Response(404, text="missing"))
            assert await client.fetch_page("https://files.test/report.pdf", 100) == ""
            assert await client.fetch_page("https://slow.test/", 100) == ""
            assert await client.fetch_page("https://gone.test/", 100) == ""
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_without_credentials_returns_empty_without_request():
    client = GoogleSearchClient(CredentialSource(env={}))
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(SEARCH_URL).mock(return_value=Response(200, json=ITEMS))
            assert await client.search("anything") == []
            assert not route.called
        assert not client.enabled
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_errors_degrade_to_empty_results():
    client = GoogleSearchClient(CredentialSource(env=CREDS))
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(SEARCH_URL).mock(
                side_effect=[Response(403, text="quota exceeded"), httpx.ConnectError("refused")]
            )
            assert await client.search("first", fetch_pages=False) == []
            assert await client.search("second", fetch_pages=False) == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_search_results_are_cached_per_query_count_and_window():
    client = GoogleSearchClient(CredentialSource(env=CREDS), cache=TTLCache(300, max_entries=10))
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(SEARCH_URL).mock(return_value=Response(200, json=ITEMS))
            first = await client.search("bitcoin", fetch_pages=False)
            second = await client.search("bitcoin", fetch_pages=False)
            await client.search("bitcoin", date_window=DateWindow.WEEK, fetch_pages=False)
        assert first == second
        assert route.call_count == 2
    finally:
        await client.close()


def test_extract_page_text_drops_boilerplate_and_truncates():
    text = extract_page_text(PAGE, 1000)
    assert "Bitcoin rose sharply." in text
    assert "var x" not in text
    assert "Home | About" not in text
    assert "Copyright" not in text

    assert truncate_text("One sentence here. Two sentence here. Three", 30) == "One sentence here."
    assert truncate_text("x" * 50, 20) == "x" * 20 + "…"
    assert trim_snippet("y" * 700) == "y" * 597 + "..."


def test_extract_date_prefers_metatags():
    assert extract_date({"pagemap": {"metatags": [{"datePublished": "2025-01-02"}]}, "snippet": "Jan 1, 2025 — x"}) == "2025-01-02"
    assert extract_date({"pagemap": {"metatags": [{"date": "not a date"}]}, "snippet": "Jan 1, 2025 — x"}) == "Jan 1, 2025"
    assert extract_date({"snippet": "no date here"}) is None
