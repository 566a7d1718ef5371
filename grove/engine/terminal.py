"""Interactive shell sessions on pseudo-terminals.

Each session owns one login shell attached to a fresh PTY. Output is read
from the master side on the event loop (``loop.add_reader``), so no reader
threads are needed.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import secrets
import struct
import termios
import time
from pathlib import Path
from typing import AsyncIterator

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
READ_CHUNK = 4096
TERMINAL_ENV = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "LANG": "en_US.UTF-8",
}


def exit_notice(code: int) -> str:
    """Dim one-line banner shown when the shell exits."""
    return f"\r\n\x1b[38;5;244m[Process exited with code {code}]\x1b[0m\r\n"


def set_window_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


def _become_session_leader() -> None:
    # Runs in the child between fork and exec: new session, PTY as ctty.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtySession:
    """One shell process bound to one PTY master."""

    def __init__(
        self,
        session_id: str,
        process: asyncio.subprocess.Process,
        master_fd: int,
        cwd: str,
    ) -> None:
        self.id = session_id
        self.process = process
        self.master_fd = master_fd
        self.cwd = cwd
        self.created_at = int(time.time() * 1000)
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._closed = False
        self._reading = True
        self._loop.add_reader(master_fd, self._on_readable)

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self.master_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the child side of the PTY is gone.
            chunk = b""
        if chunk:
            self._chunks.put_nowait(chunk)
            return
        self._stop_reading()

    def _stop_reading(self) -> None:
        if not self._reading:
            return
        self._reading = False
        try:
            self._loop.remove_reader(self.master_fd)
        except (ValueError, OSError):
            pass
        self._chunks.put_nowait(None)

    async def output(self) -> AsyncIterator[bytes]:
        """Yield raw output chunks until the PTY reaches EOF."""
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    def write(self, data: str | bytes) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8") if isinstance(data, str) else data
        view = memoryview(payload)
        while view:
            try:
                written = os.write(self.master_fd, view)
            except BlockingIOError:
                logger.warning("PTY %s input buffer full; dropped %d bytes", self.id, len(view))
                return
            except OSError as exc:
                logger.info("PTY %s write failed: %s", self.id, exc)
                return
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        set_window_size(self.master_fd, cols, rows)

    async def wait(self) -> int:
        """Wait for the shell to exit and return its exit code."""
        return await self.process.wait()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_reading()
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("PTY %s shell did not exit after kill", self.id)
        try:
            os.close(self.master_fd)
        except OSError:
            pass


class TerminalSessionManager:
    """Registry of live PTY sessions."""

    def __init__(
        self,
        shell: str | None = None,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> None:
        self._shell = shell or os.environ.get("SHELL") or "/bin/sh"
        self._cols = cols
        self._rows = rows
        self._sessions: dict[str, PtySession] = {}

    @property
    def shell(self) -> str:
        return self._shell

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> PtySession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Terminal session not found: {session_id}")
        return session

    async def open_session(self, cwd: str | Path | None = None) -> PtySession:
        directory = Path(cwd).expanduser() if cwd else Path.home()
        if not directory.is_dir():
            raise ValidationError(f"Working directory does not exist: {cwd}")

        master_fd, slave_fd = os.openpty()
        try:
            set_window_size(slave_fd, self._cols, self._rows)
            process = await asyncio.create_subprocess_exec(
                self._shell, "-l",
                cwd=str(directory),
                env={**os.environ, **TERMINAL_ENV},
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_become_session_leader,
            )
        except Exception:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        os.set_blocking(master_fd, False)

        session = PtySession(f"pty-{secrets.token_hex(6)}", process, master_fd, str(directory))
        self._sessions[session.id] = session
        logger.info(
            "PTY session opened id=%s pid=%s shell=%s cwd=%s",
            session.id, process.pid, self._shell, directory,
        )
        return session

    async def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await session.close()
        logger.info("PTY session closed id=%s", session_id)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)

    @staticmethod
    def handle_client_frame(session: PtySession, frame: str) -> None:
        """Apply one inbound text frame: a resize command or raw input."""
        if frame.startswith("{"):
            try:
                message = json.loads(frame)
            except ValueError:
                message = None
            if (
                isinstance(message, dict)
                and message.get("type") == "resize"
                and isinstance(message.get("cols"), int)
                and isinstance(message.get("rows"), int)
                and not isinstance(message.get("cols"), bool)
                and not isinstance(message.get("rows"), bool)
            ):
                session.resize(message["cols"], message["rows"])
                return
        session.write(frame)
