"""
Markdown memory notes.

Each agent owns a directory under the notes root (its memory_path). By
convention it holds:

    memory.md   long-lived facts the agent maintains itself
    temp.md     scratch notes for the current run, reset at run start
    *.md        anything else the agent chooses to write

All paths are relative to the root; anything resolving outside it is
rejected.
"""

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

MEMORY_FILE = "memory.md"
TEMP_FILE = "temp.md"


class NoteStore:
    """Read/write access to markdown files below one root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def resolve(self, rel_path: str) -> Path:
        """Absolute path for rel_path, refusing escapes from the root."""
        path = (self.root / rel_path.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Path escapes memory directory: {rel_path}")
        return path

    def exists(self, rel_path: str) -> bool:
        return self.resolve(rel_path).is_file()

    def read(self, rel_path: str) -> str | None:
        """File contents, or None when the file does not exist."""
        path = self.resolve(rel_path)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, rel_path: str, content: str, append: bool = False) -> Path:
        path = self.resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a" if append else "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def delete(self, rel_path: str) -> bool:
        path = self.resolve(rel_path)
        if path.is_file():
            path.unlink()
            return True
        return False

    def delete_dir(self, rel_path: str) -> bool:
        """Remove a directory and everything below it. The root itself is refused."""
        path = self.resolve(rel_path)
        if path == self.root:
            raise ValueError("Refusing to delete the memory root")
        if not path.is_dir():
            return False
        shutil.rmtree(path)
        logger.info("Deleted notes directory %s", rel_path)
        return True

    def all_paths(self, prefix: str = "") -> list[str]:
        """Relative paths of every .md file under prefix, sorted."""
        base = self.resolve(prefix) if prefix else self.root
        if not base.is_dir():
            return []
        return sorted(str(p.relative_to(self.root)) for p in base.rglob("*.md") if p.is_file())

    def list_tree(self, prefix: str = "") -> str:
        """Indented tree of directories and markdown files under prefix."""
        base = self.resolve(prefix) if prefix else self.root
        if not base.is_dir():
            return "(empty)"

        lines = []

        def walk(directory: Path, depth: int):
            for entry in sorted(directory.iterdir(), key=lambda p: (p.is_file(), p.name)):
                if entry.is_dir():
                    lines.append(f"{'  ' * depth}{entry.name}/")
                    walk(entry, depth + 1)
                elif entry.suffix == ".md":
                    lines.append(f"{'  ' * depth}{entry.name}")

        walk(base, 0)
        return "\n".join(lines) if lines else "(empty)"

    # -------------------------------------------------------------------------
    # Agent conventions
    # -------------------------------------------------------------------------

    def memory_file(self, memory_path: str) -> str:
        return f"{memory_path}/{MEMORY_FILE}"

    def temp_file(self, memory_path: str) -> str:
        return f"{memory_path}/{TEMP_FILE}"

    def reset_temp(self, memory_path: str, agent_name: str, started_at: str):
        """Start a fresh scratch file for a run."""
        header = f"# Scratch notes: {agent_name}\n\nRun started {started_at}\n\n"
        self.write(self.temp_file(memory_path), header)

    def other_notes(self, memory_path: str) -> list[str]:
        """The agent's notes other than memory.md and temp.md."""
        skip = {self.memory_file(memory_path), self.temp_file(memory_path)}
        return [p for p in self.all_paths(memory_path) if p not in skip]
