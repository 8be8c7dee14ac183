"""Xvfb 仮想ディスプレイ管理.

DisplayManager が 1 セッション分の Xvfb を起動・所有する。
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from web_page_stream.errors import SetupFailure
from web_page_stream.process import ProcessHandle, poll_until

logger = logging.getLogger(__name__)


async def check_display(display: str | None = None) -> bool:
    """X11 ディスプレイが利用可能か確認する.

    X ソケットの存在を確認し、xdpyinfo があれば接続も確認する。

    Args:
        display: チェックするディスプレイ (None の場合は環境変数から取得)

    Returns:
        ディスプレイが利用可能なら True
    """
    display = display or os.environ.get("DISPLAY", ":99")
    display_num = display.lstrip(":").split(".")[0]
    if not os.path.exists(f"/tmp/.X11-unix/X{display_num}"):
        return False

    try:
        proc = await asyncio.create_subprocess_exec(
            "xdpyinfo",
            "-display",
            display,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError:
        # xdpyinfo 未インストール: ソケットの存在で判定
        return True

    try:
        return await asyncio.wait_for(proc.wait(), timeout=5.0) == 0
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False


@dataclass
class DisplaySurface:
    """描画先ディスプレイ.

    handle が None の場合は既存の DISPLAY を借りている（所有しない）。
    """

    display: str
    width: int
    height: int
    handle: ProcessHandle | None = None

    @classmethod
    def ambient(cls, width: int, height: int) -> "DisplaySurface":
        """環境変数 DISPLAY の既存ディスプレイを使う."""
        return cls(display=os.environ.get("DISPLAY", ":0.0"), width=width, height=height)

    @property
    def owned(self) -> bool:
        return self.handle is not None


class DisplayManager:
    """セッション用の Xvfb を 1 つ起動・所有する.

    Usage:
        mgr = DisplayManager(display_number=99)
        surface = await mgr.acquire(1920, 1080)  # ":99"
        ...
        await mgr.release()
    """

    # Xvfb 起動ポーリング: 0.2s 間隔 × 15 回 = 最大 3s
    _POLL_INTERVAL = 0.2
    _POLL_MAX_ATTEMPTS = 15

    # プロセス停止タイムアウト
    _STOP_TIMEOUT = 3.0

    def __init__(
        self,
        display_number: int = 99,
        screen_depth: int = 24,
        *,
        spawn: Callable[..., Awaitable[ProcessHandle]] = ProcessHandle.spawn,
    ):
        """DisplayManager を初期化する.

        Args:
            display_number: 使用するディスプレイ番号
            screen_depth: X11 色深度
            spawn: プロセス起動関数
        """
        self._display_num = display_number
        self._depth = screen_depth
        self._spawn = spawn
        self._surface: DisplaySurface | None = None
        # 起動中を含む所有中の Xvfb
        self._handle: ProcessHandle | None = None

    @property
    def display(self) -> str:
        return f":{self._display_num}"

    @property
    def surface(self) -> DisplaySurface | None:
        return self._surface

    async def acquire(self, width: int, height: int) -> DisplaySurface:
        """Xvfb を起動し、ディスプレイが使えるようになるまで待つ.

        Args:
            width: 画面幅 (px)
            height: 画面高さ (px)

        Returns:
            起動したディスプレイ

        Raises:
            SetupFailure: Xvfb が起動直後に終了した、またはタイムアウト
        """
        if self._handle is not None:
            raise RuntimeError(f"Display {self.display} is already acquired")

        display = self.display

        # 1. stale ロックファイルの清掃
        self._cleanup_stale_lock()

        # 2. Xvfb 起動
        try:
            handle = await self._spawn(
                "Xvfb",
                [
                    "Xvfb",
                    display,
                    "-screen",
                    "0",
                    f"{width}x{height}x{self._depth}",
                    "-ac",
                    "+extension",
                    "GLX",
                    "+render",
                    "-noreset",
                ],
            )
        except FileNotFoundError as e:
            raise SetupFailure(f"Xvfb is not installed: {e}") from e
        # 起動確認中にキャンセルされても release() で停止できるよう先に保持する
        self._handle = handle

        # 3. 起動確認（プロセス生存 + ディスプレイ接続）
        async def _ready() -> bool:
            if not handle.is_alive:
                rc = await handle.wait()
                raise SetupFailure(
                    f"Xvfb exited on {display} (code={rc})", handle.diagnostics
                )
            return await check_display(display)

        try:
            started = await poll_until(
                _ready,
                attempts=self._POLL_MAX_ATTEMPTS,
                interval=self._POLL_INTERVAL,
            )
        except SetupFailure:
            logger.error("Xvfb failed to start on %s", display)
            self._handle = None
            self._cleanup_stale_lock()
            raise

        if not started:
            logger.error("Xvfb did not become ready on %s", display)
            await handle.terminate(self._STOP_TIMEOUT)
            self._handle = None
            self._cleanup_stale_lock()
            raise SetupFailure(
                f"Xvfb failed to start on {display}", handle.diagnostics
            )

        logger.info(
            "Xvfb started on %s (%dx%d, PID=%d)", display, width, height, handle.pid
        )
        self._surface = DisplaySurface(
            display=display, width=width, height=height, handle=handle
        )
        return self._surface

    async def release(self) -> None:
        """Xvfb を停止する. 起動確認中でも停止する. 未取得・解放済みの場合は何もしない."""
        self._surface = None
        handle, self._handle = self._handle, None
        if handle is None:
            return

        logger.info("Releasing display %s", self.display)
        await handle.terminate(self._STOP_TIMEOUT)

        # SIGKILL 後のロックファイル清掃
        self._cleanup_stale_lock()
        logger.info("Display %s released", self.display)

    def _cleanup_stale_lock(self) -> None:
        """stale なロックファイルを検出・削除する.

        SIGKILL で Xvfb が終了した場合、ロックファイルが残留する。
        PID を確認し、プロセスが存在しなければ削除する。
        """
        lock_file = f"/tmp/.X{self._display_num}-lock"
        socket_file = f"/tmp/.X11-unix/X{self._display_num}"

        if not os.path.exists(lock_file):
            return

        try:
            with open(lock_file) as f:
                pid = int(f.read().strip())
            os.kill(pid, 0)  # プロセス存在確認（シグナルは送らない）
            logger.warning(
                "Display :%d lock exists and PID %d is alive, skipping cleanup",
                self._display_num,
                pid,
            )
        except (ProcessLookupError, ValueError, PermissionError):
            logger.warning("Cleaning stale lock for display :%d", self._display_num)
            for path in (lock_file, socket_file):
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass
