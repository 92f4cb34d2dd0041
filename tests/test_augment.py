from datetime import datetime, timezone

import pytest

from gateway.augment import (
    SEARCH_POLICY_MARKER,
    QueryRefiner,
    SearchAugmenter,
    clean_refined_query,
    detect_date_window,
    ensure_search_policy,
    extract_search_query,
    format_search_message,
    insert_after_system,
    needs_refinement,
    score_query,
    should_search,
)
from gateway.schemas import ChatMessage, DateWindow, Provider, SearchResult
from tests.fakes import FakeAdapter, FakeProviderRegistry, FakeResolver, FakeSearchClient, make_descriptor


def _msgs(*pairs):
    return [ChatMessage(role=role, content=content) for role, content in pairs]


RESULT = SearchResult(
    title="Bitcoin price live",
    link="https://prices.test/btc",
    snippet="BTC trades at 100k.",
    page_content="Bitcoin rose sharply this morning.",
    date="2026-10-16",
)


def test_policy_injection_is_idempotent():
    messages = _msgs(("system", "You are helpful."), ("user", "hi"))
    once = ensure_search_policy(messages)
    twice = ensure_search_policy(once)

    assert [m.role for m in once] == ["system", "system", "user"]
    assert SEARCH_POLICY_MARKER in once[1].content
    assert twice == once


def test_insert_after_system_appends_when_only_system_messages():
    messages = _msgs(("system", "a"), ("system", "b"))
    injected = ChatMessage(role="system", content="c")
    assert [m.content for m in insert_after_system(messages, injected)] == ["a", "b", "c"]


def test_extract_search_query_strips_attachments_and_caps_length():
    text = "Summarize this file data:text/plain;base64,aGVsbG8= please\nContent preview: secret stuff"
    assert extract_search_query(_msgs(("user", text))) == "Summarize this file please"
    assert len(extract_search_query(_msgs(("user", "word " * 200)))) <= 400
    assert extract_search_query(_msgs(("system", "only system"))) is None


def test_short_follow_up_gets_previous_topic():
    messages = _msgs(
        ("user", "What is the population of France"),
        ("assistant", "About 68 million."),
        ("user", "what about Canada?"),
    )
    assert extract_search_query(messages) == "What is the population of France what about Canada?"


def test_current_bitcoin_price_triggers_search():
    decision = score_query("What is the current Bitcoin price")
    assert decision.should_search
    assert decision.score >= 2
    assert "volatile_data" in decision.matched
    assert "factual_question" in decision.matched


def test_opt_out_phrasing_wins_over_score():
    decision = should_search("don't search for this, just answer from memory")
    assert not decision.should_search
    assert decision.reason == "opt_out"
    assert not should_search("What is the latest Bitcoin price? Don't look it up, answer from memory").should_search


def test_opt_in_and_penalties():
    assert should_search("Please search the web for cheap flights").reason == "opt_in"
    assert not should_search("hi").should_search
    assert not should_search("Write a python function to reverse a list").should_search
    assert not should_search("Write a poem about autumn leaves").should_search


def test_search_directive_overrides_heuristics():
    assert should_search("hi", "always").should_search
    assert not should_search("Bitcoin price today", "off").should_search
    assert not should_search("   ", "always").should_search


@pytest.mark.parametrize(
    "text, window",
    [
        ("what happened today", DateWindow.DAY),
        ("who is playing right now", DateWindow.DAY),
        ("top stories this week", DateWindow.WEEK),
        ("what happened last week", DateWindow.MONTH),
        ("sales figures from last month", DateWindow.QUARTER),
        ("best phones this year", DateWindow.YEAR),
        ("events scheduled in 2026", DateWindow.YEAR),
        ("latest iPhone model", DateWindow.MONTH),
        ("history of the Roman empire", None),
    ],
)
def test_detect_date_window(text, window):
    assert detect_date_window(text, current_year=2026) is window


def test_needs_refinement():
    assert needs_refinement("how much does it cost")
    assert needs_refinement("a" * 45)
    assert not needs_refinement("Bitcoin price")


def test_clean_refined_query():
    assert clean_refined_query('Search query: "bitcoin price today"') == "bitcoin price today"
    assert clean_refined_query("  'weather in Oslo'\nBecause the user asked") == "weather in Oslo"
    assert clean_refined_query("x" * 250) is None
    assert clean_refined_query("") is None
    assert len(clean_refined_query(" ".join(["word"] * 20)).split()) == 12


def test_format_search_message_layout():
    retrieved = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
    text = format_search_message("bitcoin price", [RESULT], DateWindow.DAY, retrieved_at=retrieved)

    assert text.startswith("Web search results (Google Custom Search).")
    assert "Query: bitcoin price" in text
    assert "Retrieved: 2026-10-17T12:00:00+00:00" in text
    assert "Date filter: past day" in text
    assert "1. Bitcoin price live\nURL: https://prices.test/btc\nPublished: 2026-10-16" in text
    assert "Snippet: BTC trades at 100k." in text
    assert "Page excerpt: Bitcoin rose sharply this morning." in text
    assert "Cite sources by URL." in text


@pytest.mark.asyncio
async def test_augmenter_injects_results_after_system_messages():
    search = FakeSearchClient(results=[RESULT])
    augmenter = SearchAugmenter(search, year_provider=lambda: 2026)
    messages = _msgs(("system", "sys"), ("user", "What is the current Bitcoin price"))

    out = await augmenter.augment(messages)

    assert [m.role for m in out] == ["system", "system", "system", "user"]
    assert SEARCH_POLICY_MARKER in out[1].content
    assert out[2].content.startswith("Web search results")
    assert search.calls == [
        {
            "query": "What is the current Bitcoin price",
            "count": 8,
            "date_window": DateWindow.MONTH,
            "fetch_pages": True,
            "max_page_chars": 3000,
        }
    ]


@pytest.mark.asyncio
async def test_augmenter_retries_unrestricted_when_window_is_empty():
    search = FakeSearchClient(results_by_window={None: [RESULT]})
    augmenter = SearchAugmenter(search, year_provider=lambda: 2026)

    out = await augmenter.maybe_inject_search(_msgs(("user", "bitcoin price today")))

    assert [call["date_window"] for call in search.calls] == [DateWindow.DAY, None]
    assert "Date filter" not in out[0].content
    assert out[-1].role == "user"


@pytest.mark.asyncio
async def test_augmenter_swallows_search_failures():
    search = FakeSearchClient(error=RuntimeError("backend down"))
    augmenter = SearchAugmenter(search)
    messages = _msgs(("user", "What is the current Bitcoin price"))

    out = await augmenter.augment(messages)

    assert out == ensure_search_policy(messages)


@pytest.mark.asyncio
async def test_augmenter_respects_off_directive_and_kill_switch():
    search = FakeSearchClient(results=[RESULT])
    messages = _msgs(("user", "What is the current Bitcoin price"))

    assert await SearchAugmenter(search).maybe_inject_search(messages, "off") == messages
    assert await SearchAugmenter(search, enabled=False).maybe_inject_search(messages, "always") == messages
    assert search.calls == []


@pytest.mark.asyncio
async def test_refined_query_is_used_for_search():
    adapter = FakeAdapter(scripts={"gpt-4o-mini": ['Search query: "bitcoin price', ' today"']})
    registry = FakeProviderRegistry({Provider.OPENAI: adapter})
    resolver = FakeResolver([make_descriptor("basic:gpt-4o-mini")])
    refiner = QueryRefiner(resolver, registry, "basic:gpt-4o-mini", timeout=1.0)
    search = FakeSearchClient(results=[RESULT])
    augmenter = SearchAugmenter(search, refiner=refiner, year_provider=lambda: 2026)
    messages = _msgs(
        ("user", "Tell me about Bitcoin"),
        ("assistant", "Bitcoin is a cryptocurrency."),
        ("user", "How much is it trading for right now?"),
    )

    out = await augmenter.maybe_inject_search(messages)

    assert search.calls[0]["query"] == "bitcoin price today"
    assert search.calls[0]["date_window"] is DateWindow.DAY
    assert "Query: bitcoin price today" in out[0].content
    prompt = adapter.calls[0]["messages"]
    assert prompt[0].role == "system"
    assert "Bitcoin is a cryptocurrency." in prompt[1].content
    assert adapter.calls[0]["max_tokens"] == 40


@pytest.mark.asyncio
async def test_refinement_timeout_keeps_original_query():
    adapter = FakeAdapter(scripts={"gpt-4o-mini": ["too slow"]}, delay_seconds=0.5)
    registry = FakeProviderRegistry({Provider.OPENAI: adapter})
    refiner = QueryRefiner(FakeResolver([make_descriptor("basic:gpt-4o-mini")]), registry, "basic:gpt-4o-mini", timeout=0.05)
    messages = _msgs(("user", "What is the latest news about that new phone release"))

    refined = await refiner.refine("What is the latest news about that new phone release", messages)

    assert refined == "What is the latest news about that new phone release"


@pytest.mark.asyncio
async def test_refinement_failure_keeps_original_query():
    refiner = QueryRefiner(FakeResolver([]), FakeProviderRegistry(), "basic:missing", timeout=1.0)
    assert await refiner.refine("what is it", _msgs(("user", "what is it"))) == "what is it"
