"""Change summaries, hunks and file trees computed from git output.

The engine never diffs anything itself: it runs ``git diff`` / ``git
status`` / ``git ls-files`` through the ProcessRunner and parses what
comes back.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from grove.shared.models.workspace import (
    ChangeStatus,
    DiffEntry,
    DiffHunk,
    FileTreeNode,
)

from .errors import NotFoundError, ValidationError
from .process import ProcessRunner

logger = logging.getLogger(__name__)

UNTRACKED = "??"
HUNK_MARKER = "@@"


@dataclass(frozen=True)
class StatusLine:
    """One ``git status --porcelain`` record."""
    code: str  # two-letter XY code, e.g. " M", "A ", "??"
    path: str

    @property
    def is_untracked(self) -> bool:
        return self.code == UNTRACKED


def parse_status(output: str) -> list[StatusLine]:
    """Parse ``git status --porcelain -z`` records.

    Paths arrive NUL-terminated and unquoted. A rename or copy record
    carries the new path and is followed by a record holding the old one;
    entries key on the new path.
    """
    entries: list[StatusLine] = []
    records = iter(output.split("\0"))
    for record in records:
        if len(record) < 4:
            continue
        code = record[:2]
        if "R" in code or "C" in code:
            next(records, None)
        entries.append(StatusLine(code=code, path=record[3:]))
    return entries


def map_status(code: str) -> ChangeStatus:
    if code == UNTRACKED or "A" in code:
        return "added"
    if "D" in code:
        return "deleted"
    if "R" in code:
        return "renamed"
    return "modified"


def _parse_count(raw: str) -> int:
    # Binary files report "-" for both counts.
    try:
        return int(raw)
    except ValueError:
        return 0


def merge_changes(numstat_output: str, status: list[StatusLine]) -> list[DiffEntry]:
    """Merge ``--numstat -z`` counts with status kinds, keyed by path.

    Entries keep first-seen order: numstat paths first, then status-only
    paths. numstat-only paths stay ``modified``.
    """
    entries: dict[str, DiffEntry] = {}
    records = iter(numstat_output.split("\0"))
    for record in records:
        parts = record.split("\t", 2)
        if len(parts) < 3:
            continue
        path = parts[2]
        if not path:
            # Renames leave the path field empty; old and new paths follow.
            next(records, None)
            path = next(records, "")
        entries[path] = DiffEntry(
            path=path,
            lines_added=_parse_count(parts[0]),
            lines_removed=_parse_count(parts[1]),
        )

    for item in status:
        entry = entries.get(item.path)
        if entry is None:
            entry = DiffEntry(path=item.path)
            entries[item.path] = entry
        entry.status = map_status(item.code)

    return list(entries.values())


def parse_hunks(diff_output: str) -> list[DiffHunk]:
    """Split unified diff output into hunks.

    The file-header preamble (``diff``/``index``/``---``/``+++`` and mode
    lines) is dropped; hunk body lines are kept verbatim, markers included.
    """
    hunks: list[DiffHunk] = []
    current: DiffHunk | None = None
    in_preamble = False

    for line in diff_output.split("\n"):
        if not line:
            continue
        if line.startswith(HUNK_MARKER):
            current = DiffHunk(header=line)
            hunks.append(current)
            in_preamble = False
            continue
        if line.startswith("diff "):
            current = None
            in_preamble = True
            continue
        if current is None or in_preamble:
            continue
        current.lines.append(line)

    return hunks


def new_file_hunk(content: str) -> DiffHunk:
    """Represent an untracked file as one all-added hunk."""
    lines = ["+" + line for line in content.splitlines()]
    return DiffHunk(header=f"@@ -0,0 +1,{len(lines)} @@ (new file)", lines=lines)


def build_file_tree(paths: list[str]) -> list[FileTreeNode]:
    """Insert every path into a trie rooted at ``/`` and return its children.

    Intermediate segments become directory nodes; the last segment a file
    node. Duplicate paths are ignored.
    """
    root = FileTreeNode(name="/", path="/", kind="directory", children={})
    for file_path in paths:
        parts = [part for part in file_path.strip("/").split("/") if part]
        if not parts:
            continue
        current = root
        for index, part in enumerate(parts):
            is_last = index == len(parts) - 1
            assert current.children is not None
            existing = current.children.get(part)
            if existing is None:
                existing = FileTreeNode(
                    name=part,
                    path="/" + "/".join(parts[: index + 1]),
                    kind="file" if is_last else "directory",
                    children=None if is_last else {},
                )
                current.children[part] = existing
            elif not is_last and not existing.is_directory:
                logger.debug("Path %s shadows file node %s", file_path, existing.path)
                existing.kind = "directory"
                existing.children = {}
            current = existing
    return root.sorted_children()


class DiffEngine:
    """Read-only git views over a worktree."""

    def __init__(self, runner: ProcessRunner) -> None:
        self._runner = runner

    async def status(self, worktree: str | Path) -> list[StatusLine]:
        result = await self._runner.git(
            "status", "--porcelain", "-z", "--untracked-files=all", cwd=worktree,
        )
        return parse_status(result.stdout)

    async def get_file_changes(self, worktree: str | Path) -> list[DiffEntry]:
        numstat = await self._runner.git("diff", "--numstat", "-z", cwd=worktree)
        status = await self.status(worktree)
        return merge_changes(numstat.stdout, status)

    async def get_file_diff_hunks(self, worktree: str | Path, path: str) -> list[DiffHunk]:
        relative = self._relative_path(worktree, path)
        diff = await self._runner.git("diff", "--", relative, cwd=worktree)
        if diff.stdout.strip():
            return parse_hunks(diff.stdout)

        status = await self.status(worktree)
        if not any(s.path == relative and s.is_untracked for s in status):
            return []

        full_path = Path(worktree) / relative
        try:
            content = await asyncio.to_thread(
                full_path.read_text, encoding="utf-8", errors="replace"
            )
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFoundError(f"File not found: {relative}") from exc
        return [new_file_hunk(content)]

    async def get_file_tree(self, worktree: str | Path) -> list[FileTreeNode]:
        tracked = await self._runner.git("ls-files", "-z", cwd=worktree)
        paths = [path for path in tracked.stdout.split("\0") if path]
        status = await self.status(worktree)
        paths.extend(s.path for s in status if s.is_untracked)
        return build_file_tree(paths)

    @staticmethod
    def _relative_path(worktree: str | Path, path: str) -> str:
        """Normalize *path* to a worktree-relative path; reject escapes."""
        if not path or not path.strip():
            raise ValidationError("file path is required")
        root = Path(worktree).resolve()
        candidate = Path(path)
        if not (candidate.is_absolute() and candidate.is_relative_to(root)):
            # UI tree paths are rooted at "/" but relative to the worktree.
            candidate = root / path.lstrip("/")
        resolved = candidate.resolve()
        if not resolved.is_relative_to(root) or resolved == root:
            raise ValidationError(f"Path escapes the workspace: {path}")
        return resolved.relative_to(root).as_posix()
