"""外部プロセスの所有ハンドルと有界ポーリング.

Xvfb / PulseAudio / FFmpeg はすべて ProcessHandle で所有する。
所有者は解放前に terminate() を呼ぶ責任を持つ。
"""

import asyncio
import logging
import os
import signal
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence

logger = logging.getLogger(__name__)

# 失敗時の診断用に保持する stderr 行数
DIAGNOSTIC_TAIL_LINES = 50

# この文字列を含む stderr 行は WARNING で出力する
ERROR_MARKERS = ("error", "Error", "ERROR")

# exit_status: シグナルで停止した場合の値
KILLED = "killed"

# terminate() のデフォルト猶予時間
DEFAULT_GRACE = 3.0


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    attempts: int,
    interval: float,
) -> bool:
    """check() が True を返すまで最大 attempts 回ポーリングする.

    Xvfb 起動確認、オーディオデーモン起動確認、シンク収束確認で共用する。
    check() が例外を送出した場合はそのまま伝播する（早期中断用）。

    Args:
        check: 条件確認コルーチン関数
        attempts: 最大試行回数
        interval: 試行間隔 (秒)

    Returns:
        条件が成立したら True、上限に達したら False
    """
    for attempt in range(attempts):
        if await check():
            return True
        if attempt < attempts - 1:
            await asyncio.sleep(interval)
    return False


async def run_command(
    cmd: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float = 10.0,
) -> tuple[int, str, str]:
    """短命なコマンドを実行し (終了コード, stdout, stderr) を返す.

    Raises:
        FileNotFoundError: 実行ファイルが見つからない場合
        asyncio.TimeoutError: timeout 秒以内に終了しなかった場合
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, **env} if env else None,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class ProcessHandle:
    """外部プロセス 1 つを所有するハンドル.

    stderr を非同期で読み取り、末尾 DIAGNOSTIC_TAIL_LINES 行を保持する。
    プロセスはプロセスグループリーダーとして起動し、停止時はグループごと止める。

    Usage:
        handle = await ProcessHandle.spawn("Xvfb", ["Xvfb", ":99"])
        ...
        await handle.terminate()
    """

    def __init__(self, name: str, process: asyncio.subprocess.Process):
        self.name = name
        self._process = process
        self._terminated = False
        self._diagnostics: deque[str] = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        self._readers: list[asyncio.Task] = []

    @classmethod
    async def spawn(
        cls,
        name: str,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> "ProcessHandle":
        """プロセスを起動してハンドルを返す.

        Args:
            name: ログ用のプロセス名
            cmd: コマンドライン
            env: 追加の環境変数（このプロセスにのみ適用）

        Raises:
            FileNotFoundError: 実行ファイルが見つからない場合
        """
        logger.info("Starting %s: %s", name, " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
            start_new_session=True,
        )
        handle = cls(name, process)
        if process.stderr:
            handle._readers.append(
                asyncio.create_task(
                    handle._read_stderr(process.stderr), name=f"{name}-stderr"
                )
            )
        logger.info("%s started (PID=%d)", name, process.pid)
        return handle

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_alive(self) -> bool:
        return self._process.returncode is None

    @property
    def killed(self) -> bool:
        """terminate() で停止された、またはシグナルで終了した."""
        rc = self._process.returncode
        return self._terminated or (rc is not None and rc < 0)

    @property
    def exit_status(self) -> int | str | None:
        """None (実行中) / 終了コード / KILLED."""
        if self._process.returncode is None:
            return None
        if self.killed:
            return KILLED
        return self._process.returncode

    @property
    def diagnostics(self) -> str:
        """保持している stderr 末尾."""
        return "\n".join(self._diagnostics)

    async def wait(self) -> int:
        """プロセス終了を待ち、stderr を読み切ってから終了コードを返す."""
        rc = await self._process.wait()
        if self._readers:
            # キャンセルされても reader は止めない
            await asyncio.wait(self._readers)
        return rc

    async def terminate(self, grace: float = DEFAULT_GRACE) -> bool:
        """プロセスグループを停止する (SIGTERM → タイムアウト → SIGKILL).

        既に終了している、または停止処理中の場合はシグナルを送らない。

        Args:
            grace: SIGKILL までの猶予 (秒)

        Returns:
            シグナルを送った場合 True
        """
        pid = self._process.pid
        if self._process.returncode is not None or self._terminated:
            logger.debug("%s already stopped (PID=%d)", self.name, pid)
            return False

        self._terminated = True
        logger.info("Stopping %s (PID=%d)", self.name, pid)
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("%s already exited (PID=%d)", self.name, pid)
            return False

        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
            logger.info("%s exited gracefully (PID=%d)", self.name, pid)
        except asyncio.TimeoutError:
            logger.warning(
                "%s did not exit in %.1fs, sending SIGKILL (PID=%d)",
                self.name,
                grace,
                pid,
            )
            try:
                os.killpg(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await self._process.wait()
        return True

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        """stderr を行単位でログに出力し、末尾を保持する."""
        try:
            async for line in stream:
                text = line.decode("utf-8", errors="replace").rstrip()
                if not text:
                    continue
                self._diagnostics.append(text)
                if any(marker in text for marker in ERROR_MARKERS):
                    logger.warning("%s: %s", self.name, text)
                else:
                    logger.debug("%s: %s", self.name, text)
        except (ValueError, ConnectionError) as e:
            # 行長上限超過やパイプ切断。診断に残して読み取りを終える
            logger.debug("%s: stderr reader stopped: %s", self.name, e)
