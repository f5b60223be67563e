"""File scanner — enumerate the files an agent deploys from its source tree."""

from pathlib import Path

# Directories never deployed into a workspace
SKIP_DIRS = {
    ".git", "__pycache__", "node_modules", ".venv", "venv",
    ".pytest_cache", ".mypy_cache", ".ruff_cache",
}

# Files never deployed into a workspace
SKIP_FILES = {".DS_Store", ".env"}


def list_files(source_dir: Path) -> list[str]:
    """Return every deployable file under ``source_dir`` as sorted POSIX relative paths."""
    root = Path(source_dir)
    if not root.is_dir():
        return []

    files = []
    for item in root.rglob("*"):
        if item.is_file() and _should_include(item.relative_to(root)):
            files.append(item.relative_to(root).as_posix())
    return sorted(files)


def _should_include(relative: Path) -> bool:
    for part in relative.parts[:-1]:
        if part in SKIP_DIRS:
            return False
    return relative.name not in SKIP_FILES
