"""
Workspace store - small persistent text documents and the turn log.

Each session owns a workspace directory holding IDENTITY.md, USER.md,
MEMORY.md (quick memory), TMP_MEMORY.md and ``history.jsonl``, the
append-only log of every turn message.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..llm.base import ChatMessage

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.jsonl"
RESUME_MARKER = ".resume"

DEFAULT_FILES = {
    "IDENTITY.md": """# Identity

I am a personal AI agent. I help my user with research, automation and
day-to-day tasks, and I keep track of what matters to them across sessions.
""",
    "USER.md": """# User Profile

- **Name**: Not specified
- **Timezone**: UTC
""",
    "MEMORY.md": "",
}


class PersistenceError(Exception):
    """The turn log could not be written."""


class WorkspaceStore:
    """Reads and writes workspace documents and the turn log."""

    def __init__(self, workspace_dir: Optional[str | Path] = None):
        """Initialize the store.

        Args:
            workspace_dir: Path to the session workspace directory
        """
        self.workspace_dir = Path(
            workspace_dir or os.getenv("WORKSPACE_DIR", "~/.metaclaw/workspace")
        ).expanduser()
        self.history_file = self.workspace_dir / HISTORY_FILE

    def ensure_defaults(self) -> None:
        """Create the workspace with default documents where missing."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        (self.workspace_dir / "memory").mkdir(exist_ok=True)

        for filename, content in DEFAULT_FILES.items():
            path = self.workspace_dir / filename
            if not path.exists():
                path.write_text(content, encoding="utf-8")
                logger.info(f"Initialized {filename} in workspace {self.workspace_dir}")

    def path(self, filename: str) -> Path:
        return self.workspace_dir / filename

    def read(self, filename: str) -> Optional[str]:
        """Read a workspace document; None when it does not exist."""
        path = self.path(filename)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, filename: str, content: str) -> None:
        path = self.path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def exists(self, filename: str) -> bool:
        return self.path(filename).exists()

    def append_turn(self, message: ChatMessage) -> None:
        """Append one message to the turn log.

        Raises:
            PersistenceError: if the log cannot be written
        """
        line = json.dumps(message.to_record(), ensure_ascii=False)
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            with self.history_file.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise PersistenceError(f"Failed to append to {self.history_file}: {e}") from e

    def rewrite_all_turns(self, messages: list[ChatMessage]) -> None:
        """Replace the turn log with ``messages`` (after compression/pruning)."""
        now = datetime.now(timezone.utc)
        tmp_path = self.history_file.with_suffix(".jsonl.tmp")
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as f:
                for message in messages:
                    f.write(json.dumps(message.to_record(now), ensure_ascii=False) + "\n")
            tmp_path.replace(self.history_file)
        except OSError as e:
            raise PersistenceError(f"Failed to rewrite {self.history_file}: {e}") from e

    def load_all_turns(self) -> list[ChatMessage]:
        """Load the turn log. Unparseable lines are skipped with a warning."""
        if not self.history_file.exists():
            return []

        messages = []
        with self.history_file.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    messages.append(ChatMessage.from_record(json.loads(line)))
                except (json.JSONDecodeError, KeyError) as e:
                    logger.warning(f"Skipping corrupt history line {lineno}: {e}")
        return messages

    def clear_turns(self) -> None:
        if self.history_file.exists():
            self.history_file.unlink()
            logger.info("History file cleared")

    def write_resume_marker(self) -> None:
        self.write(RESUME_MARKER, "resume")


class QuickMemory:
    """A markdown note loaded verbatim into every system prompt."""

    def __init__(self, store: WorkspaceStore, filename: str = "MEMORY.md"):
        self.store = store
        self.filename = filename

    def read(self) -> str:
        return self.store.read(self.filename) or ""

    def write(self, content: str) -> None:
        self.store.write(self.filename, content)

    def append(self, text: str) -> None:
        """Append a dated entry."""
        existing = self.read()
        timestamp = datetime.now().strftime("%Y-%m-%d")
        if existing.strip():
            content = f"{existing.rstrip()}\n\n---\n_{timestamp}_\n{text.strip()}\n"
        else:
            content = f"{text.strip()}\n"
        self.write(content)

    def clear(self) -> None:
        self.write("")
