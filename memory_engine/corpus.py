"""Memory files on disk: long-term MEMORY.md plus dated daily logs."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
import re

from memory_engine.indexer import CorpusDocument
from memory_engine.logging import get_logger

log = get_logger(__name__)

MEMORY_FILE = "MEMORY.md"
_DAILY_LOG_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\.md$")


def today_str() -> str:
    return date.today().isoformat()


class MemoryFiles:
    """Reads and appends the markdown memory files under one directory.

    Also serves as the corpus for full index syncs: ``MEMORY.md`` plus every
    other ``*.md`` file directly inside the directory.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root).expanduser()

    @property
    def memory_path(self) -> Path:
        return self.root / MEMORY_FILE

    def daily_log_path(self, date_str: str | None = None) -> Path:
        return self.root / f"{date_str or today_str()}.md"

    def _ensure_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    # Long-term memory

    def load_memory(self) -> str:
        if not self.memory_path.exists():
            return ""
        return self.memory_path.read_text(encoding="utf-8")

    def save_memory(self, content: str) -> None:
        self._ensure_dir()
        self.memory_path.write_text(content, encoding="utf-8")

    def append_to_memory(self, entry: str) -> None:
        existing = self.load_memory()
        separator = "\n" if existing and not existing.endswith("\n") else ""
        self.save_memory(f"{existing}{separator}{entry}\n")

    # Daily logs

    def load_daily_log(self, date_str: str | None = None) -> str:
        path = self.daily_log_path(date_str)
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8")

    def append_to_daily_log(self, entry: str, date_str: str | None = None, now: datetime | None = None) -> Path:
        """Append ``- [HH:MM:SS] entry`` to the day's log, creating it with a header."""
        self._ensure_dir()
        day = date_str or today_str()
        path = self.daily_log_path(day)
        existing = self.load_daily_log(day)
        if not existing:
            existing = f"# Daily Log - {day}\n\n"
        separator = "" if existing.endswith("\n") else "\n"
        timestamp = (now or datetime.now()).strftime("%H:%M:%S")
        path.write_text(f"{existing}{separator}- [{timestamp}] {entry}\n", encoding="utf-8")
        return path

    def list_daily_logs(self) -> list[str]:
        """Dates (YYYY-MM-DD) of existing daily logs, newest first."""
        if not self.root.is_dir():
            return []
        dates = [p.stem for p in self.root.iterdir() if p.is_file() and _DAILY_LOG_RE.match(p.name)]
        return sorted(dates, reverse=True)

    # Corpus

    def list_documents(self) -> list[CorpusDocument]:
        if not self.root.is_dir():
            return []
        paths: list[Path] = []
        if self.memory_path.is_file():
            paths.append(self.memory_path)
        paths.extend(
            sorted(
                p for p in self.root.iterdir()
                if p.is_file() and p.suffix == ".md" and p.name != MEMORY_FILE
            )
        )
        documents: list[CorpusDocument] = []
        for path in paths:
            try:
                stat = path.stat()
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                log.warning("Skipping unreadable memory file", path=str(path), error=str(exc))
                continue
            documents.append(
                CorpusDocument(
                    path=path.name,
                    content=content,
                    mtime=stat.st_mtime,
                    size=stat.st_size,
                    origin="memory",
                )
            )
        return documents
