"""SQLite generation archive."""

from __future__ import annotations

from tzarbot.persistence.archive import GenerationArchive
from tzarbot.persistence.db import DatabaseManager
from tzarbot.persistence.repo import ensure_gitignore, get_archive_path, get_state_dir

__all__ = [
    "DatabaseManager",
    "GenerationArchive",
    "ensure_gitignore",
    "get_archive_path",
    "get_state_dir",
]
