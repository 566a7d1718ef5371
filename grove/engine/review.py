"""Model-assisted review of a worktree's pending changes.

The review prompt is built from the DiffEngine's change summary plus the
leading characters of the first few changed files, sent through a
text-generation provider, and the reply parsed back into a CodeReview.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from grove.adapters.events import TextDelta
from grove.shared.models.workspace import DiffEntry

from .diff import DiffEngine
from .errors import ValidationError
from .providers.base import GenerationRequest, ProviderCredentials, TextGenerationProvider

logger = logging.getLogger(__name__)

MAX_REVIEW_FILES = 5
MAX_FILE_CHARS = 5000
REVIEW_MAX_TOKENS = 2000

REVIEW_SYSTEM_PROMPT = "You are an expert code reviewer. Respond only with valid JSON."

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

_REVIEW_INSTRUCTIONS = """\
Provide a JSON response with:
1. "summary": Brief overall assessment (1-2 sentences)
2. "suggestions": Array of specific improvement suggestions (max 6)
3. "issues": Array of potential bugs or problems found
4. "security": Any security concerns
5. "rating": Overall rating (good/needs-work/critical)

Focus on:
- Logic errors and edge cases
- Performance issues
- Security vulnerabilities
- Code quality and maintainability
- Missing error handling"""


@dataclass(frozen=True)
class ReviewedFile:
    path: str
    status: str
    content: str


@dataclass
class CodeReview:
    summary: str
    suggestions: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    security: Any = None
    rating: str = "good"
    # Set only when the reply was not valid JSON.
    raw_response: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "summary": self.summary,
            "suggestions": self.suggestions,
            "issues": self.issues,
            "security": self.security,
            "rating": self.rating,
        }
        if self.raw_response is not None:
            data["rawResponse"] = self.raw_response
        return data


def build_review_prompt(entries: list[DiffEntry], files: list[ReviewedFile]) -> str:
    summary = "\n".join(
        f"File: {e.path} (+{e.lines_added}/-{e.lines_removed}) [{e.status}]"
        for e in entries
    )
    contents = "\n".join(
        f"### {f.path} ({f.status})\n```\n{f.content}\n```\n" for f in files
    )
    return (
        "You are an expert code reviewer. Analyze these code changes and "
        "provide specific, actionable feedback.\n\n"
        f"## Changed Files Summary\n{summary}\n\n"
        f"## File Contents\n{contents}\n\n"
        f"{_REVIEW_INSTRUCTIONS}"
    )


def _string_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [item if isinstance(item, str) else json.dumps(item) for item in value]
    if isinstance(value, str) and value:
        return [value]
    return []


def parse_review(text: str) -> CodeReview:
    """Parse the model reply, fenced or bare JSON.

    A reply that is not a JSON object still yields a review: its ``-``
    bullet lines become suggestions and the full text is kept.
    """
    match = _FENCED_JSON.search(text)
    candidate = match.group(1) if match else text
    try:
        data = json.loads(candidate)
    except ValueError:
        data = None

    if not isinstance(data, dict):
        bullets = [
            line.strip()[1:].strip()
            for line in text.splitlines()
            if line.strip().startswith("-")
        ]
        return CodeReview(summary="Review completed", suggestions=bullets, raw_response=text)

    return CodeReview(
        summary=str(data.get("summary") or ""),
        suggestions=_string_list(data.get("suggestions")),
        issues=_string_list(data.get("issues")),
        security=data.get("security"),
        rating=str(data.get("rating") or "good"),
    )


class ReviewService:
    """Composes DiffEngine output into a provider request."""

    def __init__(
        self,
        diff: DiffEngine,
        *,
        max_files: int = MAX_REVIEW_FILES,
        max_chars: int = MAX_FILE_CHARS,
    ) -> None:
        self._diff = diff
        self._max_files = max_files
        self._max_chars = max_chars

    async def collect(self, worktree: str | Path) -> tuple[list[DiffEntry], list[ReviewedFile]]:
        """Change entries plus truncated contents of the first changed files.

        Deleted or unreadable files are left out of the contents.
        """
        entries = await self._diff.get_file_changes(worktree)
        files: list[ReviewedFile] = []
        for entry in entries[: self._max_files]:
            if entry.status == "deleted":
                continue
            full_path = Path(worktree) / entry.path
            try:
                content = await asyncio.to_thread(
                    full_path.read_text, encoding="utf-8", errors="replace"
                )
            except OSError as exc:
                logger.debug("Skipping %s in review: %s", entry.path, exc)
                continue
            files.append(ReviewedFile(entry.path, entry.status, content[: self._max_chars]))
        return entries, files

    async def review(
        self,
        worktree: str | Path,
        provider: TextGenerationProvider,
        credentials: ProviderCredentials,
        model: str,
    ) -> CodeReview:
        entries, files = await self.collect(worktree)
        if not entries:
            raise ValidationError("Workspace has no changes to review")

        request = GenerationRequest(
            messages=[{"role": "user", "content": build_review_prompt(entries, files)}],
            system_prompt=REVIEW_SYSTEM_PROMPT,
            model=model,
            max_tokens=REVIEW_MAX_TOKENS,
        )
        chunks: list[str] = []
        async for event in provider.stream(request, credentials):
            if isinstance(event, TextDelta):
                chunks.append(event.text)
        logger.info(
            "Review of %s: files=%d included=%d chars=%d",
            worktree, len(entries), len(files), sum(len(c) for c in chunks),
        )
        return parse_review("".join(chunks))
