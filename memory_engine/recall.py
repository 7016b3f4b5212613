"""Auto-recall and auto-capture on top of the memory engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import re

from memory_engine.config import RecallConfig
from memory_engine.corpus import MemoryFiles, today_str
from memory_engine.engine import MemoryEngine
from memory_engine.exceptions import MemoryEngineError
from memory_engine.logging import get_logger
from memory_engine.search import ScoredResult

log = get_logger(__name__)

_EXPLICIT_REMEMBER_RE = re.compile(r"\b(remember|don't forget|do not forget|note that|keep in mind)\b", re.IGNORECASE)
_MEMORY_TRIGGERS = (
    _EXPLICIT_REMEMBER_RE,
    re.compile(r"\bi (really )?(prefer|like|love|hate|dislike|always|never|usually)\b", re.IGNORECASE),
    re.compile(r"\b(we decided|i decided|decided to|we will use|we'll use|let's use|going with)\b", re.IGNORECASE),
    re.compile(r"\+\d{10,}"),
    re.compile(r"[\w.-]+@[\w.-]+\.\w+"),
    re.compile(r"\bmy\s+\w+\s+is\b", re.IGNORECASE),
    re.compile(r"\b(always|never)\b", re.IGNORECASE),
    re.compile(r"\b(important|critical)\b", re.IGNORECASE),
)
_SMALL_TALK_RE = re.compile(r"^(hi|hello|hey|ok|okay|thanks|thank you|yes|no|sure)\s*[!.]?$", re.IGNORECASE)
_MEMORY_SAVE_RE = re.compile(r"<memory-save>\s*([\s\S]*?)\s*</memory-save>")
_CANDIDATE_MAX_CHARS = 200


@dataclass
class CaptureResult:
    captured: int = 0
    entries: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def should_capture(user_message: str) -> bool:
    """Skip very short messages and bare greetings/acknowledgements."""
    text = user_message.strip()
    if len(text) < 10:
        return False
    return not _SMALL_TALK_RE.match(text)


def extract_memory_candidates(user_message: str, assistant_response: str) -> list[str]:
    """Pick statements worth remembering from one conversation turn."""
    candidates: list[str] = []
    snippet = user_message.strip()[:_CANDIDATE_MAX_CHARS]

    if _EXPLICIT_REMEMBER_RE.search(user_message):
        candidates.append(f"User asked to remember: {snippet}")
    elif any(trigger.search(user_message) for trigger in _MEMORY_TRIGGERS):
        candidates.append(snippet)

    for block in _MEMORY_SAVE_RE.findall(assistant_response):
        for line in block.split("\n"):
            entry = re.sub(r"^[-*]\s*", "", line).strip()
            if entry:
                candidates.append(entry)

    return candidates


def format_recall_block(results: list[ScoredResult]) -> str:
    """Render hits as a ``<relevant-memories>`` prompt block ('' when empty)."""
    if not results:
        return ""
    sections = [
        f"[{i}] {r.path}:{r.start_line}-{r.end_line} (score={r.score:.2f})\n{r.snippet}"
        for i, r in enumerate(results, start=1)
    ]
    body = "\n\n".join(sections)
    return (
        "<relevant-memories>\n"
        "The following memories may be relevant to this conversation:\n\n"
        f"{body}\n"
        "</relevant-memories>"
    )


class MemoryRecall:
    """Recall/capture workflow used around each conversation turn."""

    def __init__(self, engine: MemoryEngine, files: MemoryFiles, config: RecallConfig | None = None):
        self.engine = engine
        self.files = files
        self.config = config or RecallConfig()

    async def auto_recall(self, query: str) -> str:
        """Search memory for *query* and return a prompt block, or '' on no hits or failure."""
        try:
            if self.engine.is_embedding_available():
                await self.engine.sync_index()
            results = await self.engine.search(
                query,
                max_results=self.config.max_results,
                min_score=self.config.min_score,
            )
        except MemoryEngineError as exc:
            log.warning("Auto-recall failed", error=str(exc))
            return ""
        return format_recall_block(results)

    async def auto_capture(self, user_message: str, assistant_response: str) -> CaptureResult:
        """Store up to ``max_captures`` new facts from one turn, skipping near-duplicates."""
        result = CaptureResult()
        if not should_capture(user_message) and "<memory-save>" not in assistant_response:
            return result
        candidates = extract_memory_candidates(user_message, assistant_response)
        for candidate in candidates[: self.config.max_captures]:
            try:
                stored = await self._store_entry(candidate, candidate)
            except MemoryEngineError as exc:
                log.warning("Auto-capture failed", error=str(exc))
                break
            if stored:
                result.captured += 1
                result.entries.append(candidate)
            else:
                result.skipped.append(candidate)
        return result

    async def store(self, text: str, category: str | None = None) -> bool:
        """Explicitly remember *text*; returns False when a near-duplicate exists."""
        log_entry = f"[{category}] {text}" if category else text
        return await self._store_entry(text, log_entry)

    async def forget(self, *, chunk_id: str | None = None, query: str | None = None) -> int:
        """Delete one chunk by id, or the closest matches for *query*. Returns chunks removed."""
        if chunk_id:
            return 1 if await self.engine.remove_chunk(chunk_id) else 0
        if not query:
            raise ValueError("forget() needs chunk_id or query")
        matches = await self.engine.search(
            query,
            max_results=self.config.forget_max_results,
            min_score=self.config.forget_min_score,
        )
        removed = 0
        for match in matches:
            if await self.engine.remove_chunk(match.id):
                removed += 1
        log.info("Forgot memories", query=query, removed=removed)
        return removed

    async def find_duplicate(self, text: str) -> ScoredResult | None:
        hits = await self.engine.search(text, max_results=1, min_score=self.config.dedup_min_score)
        return hits[0] if hits else None

    async def _store_entry(self, text: str, log_entry: str) -> bool:
        duplicate = await self.find_duplicate(text)
        if duplicate is not None:
            log.debug("Skipping duplicate memory", score=round(duplicate.score, 3), path=duplicate.path)
            return False
        day = today_str()
        log_path = await asyncio.to_thread(self.files.append_to_daily_log, log_entry, day)
        # Same logical path as the daily log file, so the next full sync supersedes these chunks.
        await self.engine.index_text(text, "memory", log_path.name)
        return True
