from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from unittest.mock import AsyncMock, patch

import pytest

from grove import app


@pytest.fixture(autouse=True)
def _isolate(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("GROVE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def test_parser_options() -> None:
    args = app.build_parser().parse_args(
        ["--host", "0.0.0.0", "--port", "0", "--config", "x.yaml", "--log-level", "debug"]
    )
    assert args.host == "0.0.0.0"
    assert args.port == 0
    assert args.config == "x.yaml"
    assert args.log_level == "debug"


def test_configure_logging_writes_rotating_file(tmp_path) -> None:
    log_file = app.configure_logging("debug", tmp_path / "logs")

    root = logging.getLogger()
    assert log_file == tmp_path / "logs" / app.LOG_FILENAME
    assert root.level == logging.DEBUG
    assert any(isinstance(h, RotatingFileHandler) for h in root.handlers)

    logging.getLogger("grove.test").info("hello %s", "file")
    for handler in root.handlers:
        handler.flush()
    assert "hello file" in log_file.read_text()


def test_unknown_level_falls_back_to_info(tmp_path) -> None:
    app.configure_logging("chatty", tmp_path)
    assert logging.getLogger().level == logging.INFO


def test_main_applies_cli_overrides(tmp_path) -> None:
    with patch("grove.server.server.GroveServer") as server_cls:
        server_cls.return_value.start = AsyncMock()
        with pytest.raises(SystemExit) as exc_info:
            app.main(["--port", "0", "--host", "0.0.0.0", "--log-level", "warning"])

    assert exc_info.value.code == 0
    config = server_cls.call_args.args[0]
    assert config.port == 0
    assert config.host == "0.0.0.0"
    assert config.log_level == "WARNING"
    server_cls.return_value.start.assert_awaited_once()
