from __future__ import annotations

import pytest

from grove.engine.errors import ExternalToolError, NotFoundError, OperationTimeoutError
from grove.engine.process import ProcessRunner


@pytest.mark.asyncio
async def test_run_captures_stdout_and_exit_code() -> None:
    result = await ProcessRunner().run("sh", "-c", "echo out; echo err >&2")
    assert result.ok
    assert result.returncode == 0
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


@pytest.mark.asyncio
async def test_non_zero_exit_raises_with_stderr() -> None:
    with pytest.raises(ExternalToolError) as exc_info:
        await ProcessRunner().run("sh", "-c", "echo broken >&2; exit 4")
    err = exc_info.value
    assert err.returncode == 4
    assert err.kind == "external_tool"
    assert err.detail == "broken"
    assert err.args_list[0] == "sh"


@pytest.mark.asyncio
async def test_check_false_returns_failed_result() -> None:
    result = await ProcessRunner().run("sh", "-c", "exit 2", check=False)
    assert not result.ok
    assert result.returncode == 2


@pytest.mark.asyncio
async def test_missing_executable_is_external_tool_error() -> None:
    with pytest.raises(ExternalToolError) as exc_info:
        await ProcessRunner().run("definitely-not-a-real-binary-grove")
    assert exc_info.value.returncode == -1


@pytest.mark.asyncio
async def test_missing_working_directory_is_not_found(tmp_path) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        await ProcessRunner().git("status", cwd=tmp_path / "deleted-worktree")
    assert exc_info.value.kind == "not_found"
    assert "deleted-worktree" in exc_info.value.message


@pytest.mark.asyncio
async def test_timeout_kills_process() -> None:
    with pytest.raises(OperationTimeoutError) as exc_info:
        await ProcessRunner().run("sleep", "5", timeout=0.2)
    assert exc_info.value.kind == "timeout"
    assert exc_info.value.timeout_seconds == 0.2


@pytest.mark.asyncio
async def test_env_is_merged_over_process_environment() -> None:
    result = await ProcessRunner().run(
        "sh", "-c", 'printf "%s:%s" "$GROVE_TEST_VALUE" "${PATH:+has-path}"',
        env={"GROVE_TEST_VALUE": "abc"},
    )
    assert result.stdout == "abc:has-path"


@pytest.mark.asyncio
async def test_git_runs_in_cwd(git_repo) -> None:
    result = await ProcessRunner().git("rev-parse", "--abbrev-ref", "HEAD", cwd=git_repo)
    assert result.stdout.strip() == "main"
