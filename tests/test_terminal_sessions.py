from __future__ import annotations

import asyncio
import fcntl
import struct
import termios
from unittest.mock import MagicMock

import pytest

from grove.engine.errors import NotFoundError, ValidationError
from grove.engine.terminal import TerminalSessionManager, exit_notice


async def _read_until(session, done, timeout: float = 5.0) -> str:
    collected = ""

    async def _pump() -> None:
        nonlocal collected
        async for chunk in session.output():
            collected += chunk.decode("utf-8", errors="replace")
            if done(collected):
                return

    await asyncio.wait_for(_pump(), timeout)
    return collected


def _window_size(fd: int) -> tuple[int, int]:
    rows, cols, _, _ = struct.unpack("HHHH", fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8))
    return cols, rows


@pytest.mark.asyncio
async def test_open_session_rejects_missing_directory(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh")
    with pytest.raises(ValidationError):
        await manager.open_session(tmp_path / "missing")
    assert len(manager) == 0


@pytest.mark.asyncio
async def test_shell_runs_commands_in_cwd(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh")
    session = await manager.open_session(tmp_path)
    try:
        assert session.id.startswith("pty-")
        assert manager.get(session.id) is session
        session.write('echo "grove-$((1+1)):$(pwd)"\n')

        def _done(text: str) -> bool:
            _, marker, rest = text.partition("grove-2:")
            return bool(marker) and tmp_path.name in rest

        output = await _read_until(session, _done)
        assert "grove-2:" in output
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_exit_code_is_reported(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh")
    session = await manager.open_session(tmp_path)
    try:
        session.write("exit 3\n")
        assert await asyncio.wait_for(session.wait(), 5.0) == 3
    finally:
        await manager.close_session(session.id)


@pytest.mark.asyncio
async def test_initial_size_and_resize(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh", cols=100, rows=40)
    session = await manager.open_session(tmp_path)
    try:
        assert _window_size(session.master_fd) == (100, 40)
        TerminalSessionManager.handle_client_frame(
            session, '{"type": "resize", "cols": 90, "rows": 20}'
        )
        assert _window_size(session.master_fd) == (90, 20)
    finally:
        await manager.shutdown()


def test_client_frames_are_dispatched() -> None:
    session = MagicMock()
    handle = TerminalSessionManager.handle_client_frame

    handle(session, '{"type": "resize", "cols": 80, "rows": 24}')
    session.resize.assert_called_once_with(80, 24)
    session.write.assert_not_called()

    handle(session, "ls -la\r")
    session.write.assert_called_once_with("ls -la\r")

    # Anything that is not a well-formed resize goes to the shell verbatim.
    for frame in (
        '{"type": "resize", "cols": "80", "rows": 24}',
        '{"type": "resize", "cols": true, "rows": 24}',
        '{"type": "other"}',
        "{not json",
    ):
        session.reset_mock()
        handle(session, frame)
        session.write.assert_called_once_with(frame)
        session.resize.assert_not_called()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_forgets_session(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh")
    session = await manager.open_session(tmp_path)

    await manager.close_session(session.id)
    await manager.close_session(session.id)

    assert session.closed
    assert session.process.returncode is not None
    with pytest.raises(NotFoundError):
        manager.get(session.id)
    session.write("ignored\n")


@pytest.mark.asyncio
async def test_shutdown_closes_every_session(tmp_path) -> None:
    manager = TerminalSessionManager(shell="/bin/sh")
    sessions = [await manager.open_session(tmp_path) for _ in range(3)]

    await manager.shutdown()

    assert len(manager) == 0
    assert all(s.closed for s in sessions)


def test_exit_notice() -> None:
    notice = exit_notice(0)
    assert "[Process exited with code 0]" in notice
    assert notice.startswith("\r\n")
