"""Per-directory storage layout for orchestrator state."""

from __future__ import annotations

from pathlib import Path

import structlog

log = structlog.get_logger(__name__)

_STATE_DIR_NAME = ".tzarbot"
_ARCHIVE_FILE_NAME = "archive.db"
_GITIGNORE_ENTRIES = ("*.db", "*.db-wal", "*.db-shm", "checkpoint.json", "*.tmp")


def get_state_dir(root: Path | None = None) -> Path:
    """Return the .tzarbot directory under ``root`` (default: cwd), creating it if missing."""
    state_dir = (root if root is not None else Path.cwd()) / _STATE_DIR_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


def get_archive_path(root: Path | None = None) -> Path:
    return get_state_dir(root) / _ARCHIVE_FILE_NAME


def ensure_gitignore(state_dir: Path) -> None:
    """Keep database and checkpoint files out of version control."""
    gitignore_path = state_dir / ".gitignore"
    existing_lines: list[str] = []

    if gitignore_path.exists():
        existing_lines = gitignore_path.read_text(encoding="utf-8").splitlines()

    missing = [entry for entry in _GITIGNORE_ENTRIES if entry not in existing_lines]
    if not missing:
        return

    gitignore_path.write_text("\n".join(existing_lines + missing) + "\n", encoding="utf-8")
    log.info("gitignore_updated", path=str(gitignore_path), added=missing)
