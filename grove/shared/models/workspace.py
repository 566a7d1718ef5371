"""Workspace records and the per-request diff/file-tree views derived from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

ChangeStatus = Literal["added", "modified", "deleted", "renamed"]
NodeKind = Literal["file", "directory"]


@dataclass(frozen=True)
class Workspace:
    """One workspace: exactly one worktree directory checked out to one branch."""
    id: str
    name: str
    branch_name: str
    base_branch: str
    repo_root_path: str
    worktree_path: str
    created_at: int  # epoch milliseconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "branchName": self.branch_name,
            "baseBranch": self.base_branch,
            "repoRootPath": self.repo_root_path,
            "worktreePath": self.worktree_path,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workspace:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["branchName"]),
            branch_name=str(data["branchName"]),
            base_branch=str(data.get("baseBranch") or ""),
            repo_root_path=str(data["repoRootPath"]),
            worktree_path=str(data["worktreePath"]),
            created_at=int(data.get("createdAt") or 0),
        )


@dataclass
class DiffEntry:
    """Line counts and change kind for one changed path."""
    path: str
    lines_added: int = 0
    lines_removed: int = 0
    status: ChangeStatus = "modified"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "linesAdded": self.lines_added,
            "linesRemoved": self.lines_removed,
            "status": self.status,
        }


@dataclass
class DiffHunk:
    """One ``@@ ... @@`` block; lines keep their +/-/space marker."""
    header: str
    lines: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"header": self.header, "lines": list(self.lines)}


@dataclass
class FileTreeNode:
    name: str
    path: str
    kind: NodeKind
    # Keyed by segment name; None for files.
    children: Optional[dict[str, FileTreeNode]] = None

    @property
    def is_directory(self) -> bool:
        return self.kind == "directory"

    def sorted_children(self) -> list[FileTreeNode]:
        if not self.children:
            return []
        return sorted(
            self.children.values(),
            key=lambda node: (not node.is_directory, node.name),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "path": self.path, "kind": self.kind}
        if self.is_directory:
            data["children"] = [child.to_dict() for child in self.sorted_children()]
        return data
