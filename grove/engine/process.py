"""Asynchronous external-command execution.

Every git / shell invocation in grove goes through :class:`ProcessRunner`
so that subprocess calls never block the event loop and always come back
with captured stdout, stderr and exit code.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ExternalToolError, NotFoundError, OperationTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one finished external command."""
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> CommandResult:
        """Raise ExternalToolError unless the command exited 0."""
        if not self.ok:
            raise ExternalToolError(self.args, self.returncode, self.stderr)
        return self


class ProcessRunner:
    """Runs external commands on the event loop.

    ``default_timeout`` applies when a call passes no explicit timeout;
    ``None`` means wait indefinitely.
    """

    def __init__(self, default_timeout: float | None = 120.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        *args: str,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *args* without a shell and capture its output.

        Raises NotFoundError when *cwd* does not exist, ExternalToolError
        when the executable is missing or (with ``check``) exits non-zero,
        and OperationTimeoutError when the timeout elapses; the process is
        killed in that case.
        """
        merged_env: dict[str, str] | None = None
        if env is not None:
            merged_env = {**os.environ, **env}
        effective_timeout = self._default_timeout if timeout is None else timeout
        if cwd is not None and not Path(cwd).is_dir():
            raise NotFoundError(f"Working directory not found: {cwd}")

        logger.debug("exec %s cwd=%s", " ".join(args), cwd or ".")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd is not None else None,
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExternalToolError(args, -1, f"Command not found: {args[0]}") from exc
        except PermissionError as exc:
            raise ExternalToolError(args, -1, str(exc)) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=effective_timeout
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.warning(
                "Command timed out after %ss: %s", effective_timeout, " ".join(args)
            )
            raise OperationTimeoutError(
                f"Command '{' '.join(args[:3])}'", effective_timeout or 0.0
            )

        result = CommandResult(
            args=tuple(args),
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if not result.ok:
            logger.info(
                "Command exited %d: %s stderr=%s",
                result.returncode, " ".join(args), result.stderr.strip()[:500],
            )
        if check:
            result.check()
        return result

    async def git(
        self,
        *args: str,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run git with unquoted (UTF-8) path output."""
        return await self.run(
            "git", "-c", "core.quotepath=off", *args,
            cwd=cwd, timeout=timeout, check=check,
        )
