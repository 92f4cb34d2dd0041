"""Live web-search augmentation of a conversation.

Decides whether the latest user turn needs fresh information, optionally
asks a fast model to tighten the query, runs the search and injects the
results as a synthetic system message. Nothing in here is allowed to fail
the chat request: every failure degrades to "no augmentation".
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .errors import AugmentationError
from .normalizer import message_to_text
from .providers import resolve_parameters
from .schemas import ChatMessage, DateWindow, SearchMode, SearchResult


logger = logging.getLogger("uvicorn.error")

SEARCH_POLICY_MARKER = "Search policy:"
SEARCH_POLICY = "\n".join(
    [
        SEARCH_POLICY_MARKER,
        "- Web search runs by default for each user request when possible.",
        "- Use web search results when they are provided in the system context.",
        "- If asked whether you can browse or search the web, answer yes and say you will cite sources.",
        "- If no web results are provided for this response, answer from existing knowledge "
        "and say you could not retrieve live results.",
    ]
)

MAX_QUERY_CHARS = 400
FOLLOW_UP_MAX_CHARS = 60
FOLLOW_UP_CONTEXT_CHARS = 120
SEARCH_THRESHOLD = 2
SHORT_QUERY_CHARS = 15
REFINE_MIN_CHARS = 40
REFINE_MAX_WORDS = 12
REFINE_MAX_OUTPUT_CHARS = 200
REFINE_CONTEXT_TURNS = 4
REFINE_TURN_CHARS = 500

_DATA_URL_RE = re.compile(r"data:[^\s]+;base64,[A-Za-z0-9+/=]+", re.IGNORECASE)
_ATTACHMENT_MARKERS = ("\nData (base64", "\nContent preview:", "\n[document", "\n[embedded file")
_WS_RE = re.compile(r"\s+")
_FOLLOW_UP_RE = re.compile(
    r"^(what about|how about|is it|are they|does it|can it|tell me more|"
    r"what|why|how|when|where|who|which|and|but|so|also|more|then|ok|okay)\b",
    re.IGNORECASE,
)
_PRONOUN_RE = re.compile(r"\b(it|its|they|them|their|this|that|these|those|he|she|him|her)\b", re.IGNORECASE)

_OPT_OUT_RE = re.compile(
    r"\b(don'?t|do not|no need to|without)\s+(search|searching|look(ing)?\s+(it\s+)?up|googl\w*|brows\w*)"
    r"|\bfrom (your )?memory\b|\bno (web )?search\b|\boffline only\b",
    re.IGNORECASE,
)
_OPT_IN_RE = re.compile(
    r"\b(search (the web|online|the internet|for)|look (it|this|that) up|google (it|this|that)|"
    r"browse the web|check online|find sources|with sources|cite sources)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SearchSignal:
    name: str
    weight: int
    pattern: "re.Pattern[str]"


def _signal(name: str, weight: int, pattern: str) -> SearchSignal:
    return SearchSignal(name, weight, re.compile(pattern, re.IGNORECASE))


# Heuristic weights. They are a tuning target, not derived values.
SEARCH_SIGNALS: Tuple[SearchSignal, ...] = (
    _signal(
        "freshness",
        3,
        r"\b(latest|current(ly)?|recent(ly)?|today|tonight|right now|breaking|newest|upcoming|"
        r"up[- ]to[- ]date|as of|this (week|month|year))\b",
    ),
    _signal(
        "volatile_data",
        3,
        r"\b(prices?|cost|stocks?|share price|exchange rate|interest rates?|scores?|weather|forecast|"
        r"standings|election|polls?|market cap|inflation|crypto|bitcoin|btc|ethereum)\b",
    ),
    _signal(
        "factual_question",
        2,
        r"^(who|what|when|where|which)\b|\b(who is|who was|what is|what are|when is|when did|"
        r"where is|how much|how many)\b",
    ),
    _signal(
        "recent_time",
        2,
        r"\b20[2-9]\d\b|\b(yesterday|last (night|week|month|year)|next (week|month|year)|"
        r"past (few )?(days|weeks|months))\b",
    ),
    _signal("verification", 2, r"\b(is it true|true that|fact[- ]check|verify|confirm|rumou?rs?|debunk\w*)\b"),
    _signal("comparison", 2, r"\b(vs\.?|versus|compare|comparison|better than|difference between|alternatives? to)\b"),
    _signal(
        "named_entity",
        2,
        r"\b(ceo|president|prime minister|founder|company|government|senator|governor|university|"
        r"album|movie|film|author|team)\b",
    ),
    _signal("question_mark", 1, r"\?"),
    _signal("how_to", 1, r"\b(how (do|can|should) (i|you|we)|how to|steps to|guide to|tutorial)\b"),
    _signal(
        "trending_tech",
        1,
        r"\b(iphone|android|openai|chatgpt|gpt-?\d|gemini|claude|tesla|nvidia|apple|microsoft|"
        r"samsung|windows|macos|ios)\b",
    ),
    _signal("legal", 1, r"\b(laws?|legal|regulations?|court|ruling|lawsuit|tax(es)?|visa|compliance|bill)\b"),
    _signal(
        "events",
        1,
        r"\b(concerts?|festival|tour|tickets?|release date|premiere|box office|episode|season|match|game)\b",
    ),
    _signal("health", 1, r"\b(symptoms?|treatment|vaccines?|disease|outbreak|medication|side effects?|covid|flu)\b"),
    _signal(
        "editing",
        -3,
        r"\b(summari[sz]e|summary of|rewrite|rephrase|paraphrase|proofread|translate|shorten|fix (the |my )?grammar)\b",
    ),
    _signal(
        "creative",
        -3,
        r"\b(poem|haiku|limerick|short story|story about|lyrics|fiction|write (me )?an? (essay|song|story))\b",
    ),
    _signal(
        "coding",
        -3,
        r"\b(code|function|class|bug|debug|compile|python|javascript|typescript|regex|sql|stack trace|"
        r"refactor|unit tests?)\b",
    ),
    _signal("math", -3, r"^[\d\s+\-*/^().=x%]+$|\b(solve|calculate|integral|derivative|equation|simplify)\b"),
    _signal("greeting", -5, r"^(hi|hello|hey|yo|thanks|thank you|good (morning|afternoon|evening)|how are you)\b"),
)

# Most specific window first.
_DATE_WINDOW_RULES: Tuple[Tuple["re.Pattern[str]", DateWindow], ...] = (
    (re.compile(r"\b(today|right now|tonight|breaking)\b", re.IGNORECASE), DateWindow.DAY),
    (re.compile(r"\b(this week|past week)\b", re.IGNORECASE), DateWindow.WEEK),
    (re.compile(r"\b(this month|last week|past few days)\b", re.IGNORECASE), DateWindow.MONTH),
    (re.compile(r"\b(last month|past few months)\b", re.IGNORECASE), DateWindow.QUARTER),
    (re.compile(r"\bthis year\b", re.IGNORECASE), DateWindow.YEAR),
)
_GENERIC_FRESHNESS_RE = re.compile(
    r"\b(latest|current|currently|recent|recently|now|new|newest|update|updates|updated|upcoming)\b",
    re.IGNORECASE,
)

DATE_WINDOW_LABELS = {
    DateWindow.DAY: "past day",
    DateWindow.WEEK: "past week",
    DateWindow.MONTH: "past month",
    DateWindow.QUARTER: "past 3 months",
    DateWindow.YEAR: "past year",
}


def insert_after_system(messages: List[ChatMessage], injected: ChatMessage) -> List[ChatMessage]:
    for idx, msg in enumerate(messages):
        if msg.role != "system":
            return [*messages[:idx], injected, *messages[idx:]]
    return [*messages, injected]


def ensure_search_policy(messages: List[ChatMessage]) -> List[ChatMessage]:
    has_policy = any(
        msg.role == "system" and isinstance(msg.content, str) and SEARCH_POLICY_MARKER in msg.content
        for msg in messages
    )
    if has_policy:
        return messages
    return insert_after_system(messages, ChatMessage(role="system", content=SEARCH_POLICY))


def sanitize_search_text(text: str, max_chars: int = MAX_QUERY_CHARS) -> str:
    if not text:
        return ""
    out = _DATA_URL_RE.sub("", text)
    for marker in _ATTACHMENT_MARKERS:
        idx = out.find(marker)
        if idx != -1:
            out = out[:idx]
    out = _WS_RE.sub(" ", out).strip()
    return out[:max_chars].strip()


def extract_search_query(messages: List[ChatMessage]) -> Optional[str]:
    """The latest user turn as a search query.

    Short follow-ups ("what about Canada?") get the start of the previous user
    turn prepended so the query keeps its topic.
    """
    user_turns = [msg for msg in messages if msg.role == "user"]
    if not user_turns:
        return None
    query = sanitize_search_text(message_to_text(user_turns[-1].content))
    if not query:
        return None
    if len(query) < FOLLOW_UP_MAX_CHARS and _FOLLOW_UP_RE.match(query) and len(user_turns) > 1:
        previous = sanitize_search_text(message_to_text(user_turns[-2].content), FOLLOW_UP_CONTEXT_CHARS)
        if previous:
            query = f"{previous} {query}"
    return query


@dataclass
class SearchDecision:
    should_search: bool
    score: int = 0
    reason: str = ""
    matched: List[str] = field(default_factory=list)


def score_query(query: str) -> SearchDecision:
    text = (query or "").strip()
    if not text:
        return SearchDecision(False, reason="empty")
    if _OPT_OUT_RE.search(text):
        return SearchDecision(False, reason="opt_out")
    if _OPT_IN_RE.search(text):
        return SearchDecision(True, reason="opt_in")
    score = 0
    matched: List[str] = []
    for signal in SEARCH_SIGNALS:
        if signal.pattern.search(text):
            score += signal.weight
            matched.append(signal.name)
    if len(text) < SHORT_QUERY_CHARS and score <= 0:
        return SearchDecision(False, score, "short_query", matched)
    if score >= SEARCH_THRESHOLD:
        return SearchDecision(True, score, "score", matched)
    return SearchDecision(False, score, "below_threshold", matched)


def should_search(query: Optional[str], mode: SearchMode = "auto") -> SearchDecision:
    if mode == "off":
        return SearchDecision(False, reason="directive_off")
    if not query or not query.strip():
        return SearchDecision(False, reason="empty")
    if mode == "always":
        return SearchDecision(True, reason="directive_always")
    return score_query(query)


def needs_refinement(query: str) -> bool:
    return len(query) >= REFINE_MIN_CHARS or bool(_PRONOUN_RE.search(query))


def detect_date_window(text: str, current_year: Optional[int] = None) -> Optional[DateWindow]:
    if not text:
        return None
    for pattern, window in _DATE_WINDOW_RULES:
        if pattern.search(text):
            return window
    year = current_year or datetime.now().year
    if re.search(rf"\b{year}\b", text):
        return DateWindow.YEAR
    if _GENERIC_FRESHNESS_RE.search(text):
        return DateWindow.MONTH
    return None


def clean_refined_query(raw: Optional[str]) -> Optional[str]:
    """Normalize a refiner reply into a bare query, or None if it is unusable."""
    if not raw:
        return None
    text = raw.strip().splitlines()[0] if raw.strip() else ""
    text = re.sub(r"^\s*(search query|query)\s*:\s*", "", text, flags=re.IGNORECASE)
    text = text.strip().strip("\"'`“”‘’").strip()
    if not text or len(text) > REFINE_MAX_OUTPUT_CHARS:
        return None
    words = text.split()
    if len(words) > REFINE_MAX_WORDS:
        text = " ".join(words[:REFINE_MAX_WORDS])
    return text


def format_search_message(
    query: str,
    results: List[SearchResult],
    date_window: Optional[DateWindow] = None,
    retrieved_at: Optional[datetime] = None,
) -> str:
    stamp = (retrieved_at or datetime.now(timezone.utc)).isoformat()
    lines = [
        "Web search results (Google Custom Search).",
        f"Query: {query}",
        f"Retrieved: {stamp}",
    ]
    if date_window:
        lines.append(f"Date filter: {DATE_WINDOW_LABELS[date_window]}")
    lines.extend(["", "Results:"])
    for idx, result in enumerate(results, start=1):
        entry = [f"{idx}. {result.title}", f"URL: {result.link}"]
        if result.date:
            entry.append(f"Published: {result.date}")
        entry.append(f"Snippet: {result.snippet}" if result.snippet else "Snippet:")
        if result.page_content:
            entry.append(f"Page excerpt: {result.page_content}")
        lines.append("\n".join(entry))
    lines.extend(
        [
            "",
            "Use these results to answer the user. Cite sources by URL.",
            "Prefer the most recent sources and say so when results disagree or look outdated.",
        ]
    )
    return "\n".join(lines)


REFINE_SYSTEM_PROMPT = (
    "You turn the user's latest message into a web search query. "
    f"Reply with the query only, at most {REFINE_MAX_WORDS} words. "
    "Resolve pronouns using the conversation. No quotes, no explanation."
)


class QueryRefiner:
    """One short call to a fast model to tighten a search query."""

    def __init__(self, resolver, providers, model_key: str, timeout: float = 5.0):
        self.resolver = resolver
        self.providers = providers
        self.model_key = model_key
        self.timeout = timeout

    def _build_messages(self, query: str, messages: List[ChatMessage]) -> List[ChatMessage]:
        turns = [msg for msg in messages if msg.role in ("user", "assistant")][-REFINE_CONTEXT_TURNS:]
        transcript = "\n".join(
            f"{msg.role}: {sanitize_search_text(message_to_text(msg.content), REFINE_TURN_CHARS)}" for msg in turns
        )
        return [
            ChatMessage(role="system", content=REFINE_SYSTEM_PROMPT),
            ChatMessage(role="user", content=f"Conversation:\n{transcript}\n\nLatest message: {query}"),
        ]

    async def _complete(self, query: str, messages: List[ChatMessage]) -> str:
        descriptor = await self.resolver.resolve(self.model_key)
        adapter = self.providers.get(descriptor.provider)
        prompt = self._build_messages(query, messages)
        temperature, max_tokens = resolve_parameters(descriptor, adapter, prompt, temperature=0.2, max_tokens=40)
        pieces: List[str] = []
        async for piece in adapter.stream(descriptor.provider_model, prompt, temperature, max_tokens):
            pieces.append(piece)
        return "".join(pieces)

    async def refine(self, query: str, messages: List[ChatMessage]) -> str:
        try:
            raw = await asyncio.wait_for(self._complete(query, messages), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Query refinement timed out after %ss", self.timeout)
            return query
        except Exception as exc:
            logger.warning("Query refinement failed: %s", exc)
            return query
        refined = clean_refined_query(raw)
        if not refined:
            logger.info("Query refinement returned nothing usable; keeping original query")
            return query
        return refined


class SearchAugmenter:
    def __init__(
        self,
        search_client,
        refiner: Optional[QueryRefiner] = None,
        enabled: bool = True,
        result_count: int = 8,
        max_page_chars: int = 3000,
        year_provider: Callable[[], int] = lambda: datetime.now().year,
    ):
        self.search_client = search_client
        self.refiner = refiner
        self.enabled = enabled
        self.result_count = result_count
        self.max_page_chars = max_page_chars
        self.year_provider = year_provider

    async def augment(self, messages: List[ChatMessage], mode: SearchMode = "auto") -> List[ChatMessage]:
        return await self.maybe_inject_search(ensure_search_policy(messages), mode)

    async def _run_search(self, query: str, date_window: Optional[DateWindow]):
        try:
            results = await self.search_client.search(
                query,
                count=self.result_count,
                date_window=date_window,
                fetch_pages=True,
                max_page_chars=self.max_page_chars,
            )
            if not results and date_window is not None:
                results = await self.search_client.search(
                    query,
                    count=self.result_count,
                    date_window=None,
                    fetch_pages=True,
                    max_page_chars=self.max_page_chars,
                )
                date_window = None
        except Exception as exc:
            raise AugmentationError(f"Web search failed: {exc}") from exc
        return results, date_window

    async def maybe_inject_search(
        self, messages: List[ChatMessage], mode: SearchMode = "auto"
    ) -> List[ChatMessage]:
        if not self.enabled or self.search_client is None:
            return messages
        query = extract_search_query(messages)
        decision = should_search(query, mode)
        if not decision.should_search:
            logger.debug("Search skipped (%s, score=%s)", decision.reason, decision.score)
            return messages
        logger.info("Search triggered (%s, score=%s, signals=%s)", decision.reason, decision.score, decision.matched)

        date_window = detect_date_window(query, self.year_provider())
        if self.refiner is not None and needs_refinement(query):
            query = await self.refiner.refine(query, messages)
        try:
            results, date_window = await self._run_search(query, date_window)
        except AugmentationError as exc:
            logger.warning("%s", exc)
            return messages
        if not results:
            return messages
        injected = ChatMessage(role="system", content=format_search_message(query, results, date_window))
        return insert_after_system(messages, injected)
