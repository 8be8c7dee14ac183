"""ProcessHandle / poll_until のテスト.

ProcessHandle は実プロセス (python -c) で動作を確認する。
"""

import logging
import sys

import pytest

from web_page_stream.process import KILLED, ProcessHandle, poll_until, run_command


# ============================================================
# poll_until のテスト
# ============================================================


class TestPollUntil:
    """有界ポーリングのテスト."""

    @pytest.mark.asyncio
    async def test_returns_true_on_first_success(self):
        calls = []

        async def check():
            calls.append(1)
            return True

        assert await poll_until(check, attempts=5, interval=0.01)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_succeeds_after_retries(self):
        calls = []

        async def check():
            calls.append(1)
            return len(calls) >= 3

        assert await poll_until(check, attempts=5, interval=0.001)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_bounded_attempts(self):
        """条件が成立しなくても attempts 回で終わる."""
        calls = []

        async def check():
            calls.append(1)
            return False

        assert not await poll_until(check, attempts=4, interval=0.001)
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_exception_propagates(self):
        async def check():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await poll_until(check, attempts=3, interval=0.001)


# ============================================================
# ProcessHandle のテスト
# ============================================================


class TestProcessHandle:
    """ProcessHandle のライフサイクル."""

    @pytest.mark.asyncio
    async def test_exit_code_and_diagnostics(self, caplog):
        """stderr は保持され、error を含む行は WARNING で出る."""
        script = "import sys; sys.stderr.write('starting\\nError: bad input\\n'); sys.exit(3)"
        with caplog.at_level(logging.DEBUG, logger="web_page_stream.process"):
            handle = await ProcessHandle.spawn("py", [sys.executable, "-c", script])
            rc = await handle.wait()

        assert rc == 3
        assert not handle.is_alive
        assert not handle.killed
        assert handle.exit_status == 3
        assert "starting" in handle.diagnostics
        assert "Error: bad input" in handle.diagnostics
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("bad input" in r.getMessage() for r in warnings)

    @pytest.mark.asyncio
    async def test_terminate_running_process(self):
        handle = await ProcessHandle.spawn(
            "sleeper", [sys.executable, "-c", "import time; time.sleep(30)"]
        )
        assert handle.is_alive
        assert handle.exit_status is None

        assert await handle.terminate(grace=5.0)
        assert not handle.is_alive
        assert handle.killed
        assert handle.exit_status == KILLED

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self):
        """2 回目の terminate はシグナルを送らない."""
        handle = await ProcessHandle.spawn(
            "sleeper", [sys.executable, "-c", "import time; time.sleep(30)"]
        )
        assert await handle.terminate(grace=5.0)
        assert not await handle.terminate(grace=5.0)

    @pytest.mark.asyncio
    async def test_terminate_exited_process(self):
        handle = await ProcessHandle.spawn("py", [sys.executable, "-c", "pass"])
        await handle.wait()
        assert not await handle.terminate()
        assert handle.exit_status == 0

    @pytest.mark.asyncio
    async def test_env_is_scoped_to_process(self):
        script = "import os, sys; sys.stderr.write(os.environ['WPS_TEST'] + '\\n')"
        handle = await ProcessHandle.spawn(
            "py", [sys.executable, "-c", script], env={"WPS_TEST": "scoped"}
        )
        await handle.wait()
        assert handle.diagnostics == "scoped"


@pytest.mark.asyncio
async def test_run_command():
    rc, stdout, stderr = await run_command(
        [sys.executable, "-c", "print('out'); import sys; sys.stderr.write('err')"]
    )
    assert rc == 0
    assert stdout.strip() == "out"
    assert stderr == "err"
