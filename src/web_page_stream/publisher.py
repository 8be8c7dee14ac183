"""FFmpeg による画面 + 音声キャプチャと RTMPS 配信.

プラットフォームごとのキャプチャ入力とティアごとのエンコード設定から
FFmpeg コマンドを組み立てて起動し、終了を監視する。
非ゼロ終了の 1 回目は無音音声に差し替えて再起動し、2 回目は回復不能とする。
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

from web_page_stream.audio import AudioRoute
from web_page_stream.browser import RenderSession
from web_page_stream.config import SessionConfig
from web_page_stream.errors import PublishFailure, SetupFailure, TerminalFailure
from web_page_stream.process import ProcessHandle

logger = logging.getLogger(__name__)

# 無音フォールバック音源 (lavfi)
SILENT_SOURCE = "anullsrc=channel_layout=stereo:sample_rate={rate}"

DEFAULT_WINDOWS_AUDIO = "audio=Stereo Mix (Realtek Audio)"


def mask_url(url: str) -> str:
    """ログ出力用にストリームキー (パス末尾) を伏せる."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.path.strip("/"):
        return url
    head = parts.path.rstrip("/").rpartition("/")[0]
    return urlunsplit(parts._replace(path=f"{head}/****", query=""))


def _silent_input(config: SessionConfig) -> list[str]:
    return [
        "-f",
        "lavfi",
        "-i",
        SILENT_SOURCE.format(rate=config.profile.audio_sample_rate),
    ]


def build_capture_inputs(
    config: SessionConfig,
    display: str,
    route: AudioRoute | None,
    *,
    silent: bool = False,
    platform: str | None = None,
) -> list[str]:
    """映像 + 音声のキャプチャ入力引数を構築する.

    映像はレンダリング解像度 (スケール前) と実効フレームレートでキャプチャする。

    Args:
        config: セッション設定
        display: X11 ディスプレイ (Linux)
        route: 音声ルート (monitor source を音声入力にする)
        silent: 音声入力を無音ソースに差し替える
        platform: sys.platform 相当 (省略時は実行環境)

    Raises:
        ValueError: 未対応プラットフォーム
    """
    platform = platform or sys.platform
    fps = str(config.effective_framerate)
    size = config.resolution

    if platform.startswith("linux"):
        args = [
            "-f", "x11grab",
            "-framerate", fps,
            "-video_size", size,
            "-draw_mouse", "0",
            "-i", f"{display}+0,0",
        ]
        if silent:
            return args + _silent_input(config)
        audio = config.audio_device or (route.monitor if route else "default")
        return args + ["-f", "pulse", "-ac", "2", "-i", audio]

    if platform == "darwin":
        video = config.video_device or "1"
        audio = "none" if silent else (config.audio_device or "0")
        args = [
            "-f", "avfoundation",
            "-framerate", fps,
            "-video_size", size,
            "-i", f"{video}:{audio}",
        ]
        return args + _silent_input(config) if silent else args

    if platform == "win32":
        args = [
            "-f", "gdigrab",
            "-framerate", fps,
            "-video_size", size,
            "-i", "desktop",
        ]
        if silent:
            return args + _silent_input(config)
        return args + ["-f", "dshow", "-i", config.audio_device or DEFAULT_WINDOWS_AUDIO]

    raise ValueError(f"Unsupported platform: {platform}")


def build_encode_args(config: SessionConfig) -> list[str]:
    """ティアに応じた H.264 / AAC エンコード引数を構築する.

    出力解像度がレンダリング解像度と異なる場合は scale フィルタを挟む。
    """
    p = config.profile
    args: list[str] = []
    if config.needs_scaling:
        args += ["-vf", f"scale={config.output_width}:{config.output_height}"]
    args += [
        "-c:v", "libx264",
        "-preset", p.preset,
        "-tune", "zerolatency",
        "-crf", str(p.crf),
        "-maxrate", f"{p.maxrate_kbps}k",
        "-bufsize", f"{p.bufsize_kbps}k",
        "-pix_fmt", "yuv420p",
        "-g", str(config.keyframe_interval),
        "-threads", str(p.threads or 0),
        "-c:a", "aac",
        "-b:a", f"{p.audio_bitrate_kbps}k",
        "-ar", str(p.audio_sample_rate),
        "-ac", "2",
    ]
    return args


def build_command(
    config: SessionConfig,
    display: str,
    route: AudioRoute | None,
    *,
    silent: bool = False,
    platform: str | None = None,
    ffmpeg: str = "ffmpeg",
) -> list[str]:
    """FFmpeg コマンド全体を構築する."""
    return [
        ffmpeg,
        "-hide_banner",
        "-nostdin",
        "-loglevel", "warning",
        *build_capture_inputs(config, display, route, silent=silent, platform=platform),
        *build_encode_args(config),
        "-f", "flv",
        config.publish_url,
    ]


class Publisher:
    """FFmpeg 配信プロセスを起動・監視する.

    リトライは 1 セッションにつき 1 回だけ。

    Usage:
        publisher = Publisher()
        handle = await publisher.start(route, render_session, config)
        rc = await publisher.wait_closed()  # TerminalFailure の可能性あり
        await publisher.stop()
    """

    # 起動確認ウィンドウ: この時間生存していれば成功
    _CONFIRM_WINDOW = 2.0
    _STOP_TIMEOUT = 5.0

    def __init__(
        self,
        *,
        spawn: Callable[..., Awaitable[ProcessHandle]] = ProcessHandle.spawn,
        platform: str | None = None,
        ffmpeg: str = "ffmpeg",
        confirm_window: float | None = None,
    ):
        self._spawn = spawn
        self._platform = platform
        self._ffmpeg = ffmpeg
        self._confirm_window = (
            self._CONFIRM_WINDOW if confirm_window is None else confirm_window
        )
        self._handle: ProcessHandle | None = None
        self._commands: list[list[str]] = []
        self._failures: list[str] = []
        self._retried = False
        self._monitor_task: asyncio.Task | None = None
        self._closed: asyncio.Future | None = None
        self._context: tuple[AudioRoute | None, str, SessionConfig] | None = None

        # 状態通知 (Orchestrator が設定する)
        self.on_retry: Callable[[], None] | None = None
        self.on_recovered: Callable[[], None] | None = None

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def retried(self) -> bool:
        return self._retried

    @property
    def commands(self) -> list[list[str]]:
        """起動したコマンドの履歴."""
        return list(self._commands)

    @property
    def combined_diagnostics(self) -> str:
        return "\n".join(self._failures)

    async def start(
        self,
        route: AudioRoute | None,
        render_session: RenderSession,
        config: SessionConfig,
    ) -> ProcessHandle:
        """FFmpeg を起動し、確認ウィンドウ後も生存していれば返す.

        起動直後に失敗した場合は無音音声で 1 回だけ再起動する。

        Raises:
            SetupFailure: FFmpeg がない、または未対応プラットフォーム
            TerminalFailure: 再起動後も失敗した場合
        """
        if self._context is not None:
            raise RuntimeError("Publisher is already started")

        self._context = (route, render_session.display, config)
        self._closed = asyncio.get_running_loop().create_future()

        handle = await self._launch(silent=False)
        if not await self._confirm(handle):
            handle = await self._recover(handle)

        self._monitor_task = asyncio.create_task(self._monitor(), name="publisher-monitor")
        logger.info(
            "Publishing to %s (%s -> %s @ %dfps, tier=%s)",
            mask_url(config.publish_url),
            config.resolution,
            config.output_resolution,
            config.effective_framerate,
            config.tier.value,
        )
        return handle

    async def wait_closed(self) -> int | None:
        """配信終了を待つ.

        Returns:
            最後のプロセスの終了コード

        Raises:
            TerminalFailure: リトライ後も失敗した場合
        """
        if self._closed is None:
            raise RuntimeError("Publisher is not started")
        return await self._closed

    async def stop(self) -> None:
        """監視を止めて FFmpeg を停止する. 何度呼んでもよい."""
        task, self._monitor_task = self._monitor_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        handle = self._handle
        if handle is not None:
            await handle.terminate(self._STOP_TIMEOUT)

        if self._closed is not None and not self._closed.done():
            self._closed.set_result(handle.returncode if handle else None)

    async def _launch(self, *, silent: bool) -> ProcessHandle:
        route, display, config = self._context
        try:
            cmd = build_command(
                config,
                display,
                route,
                silent=silent,
                platform=self._platform,
                ffmpeg=self._ffmpeg,
            )
        except ValueError as e:
            raise SetupFailure(str(e)) from e

        self._commands.append(cmd)
        logger.info(
            "Launching FFmpeg (attempt %d, audio=%s)",
            len(self._commands),
            "silent" if silent else "capture",
        )
        try:
            handle = await self._spawn(
                "FFmpeg", cmd, env=route.env if route and route.env else None
            )
        except FileNotFoundError as e:
            raise SetupFailure(f"FFmpeg is not installed: {e}") from e
        self._handle = handle
        return handle

    async def _confirm(self, handle: ProcessHandle) -> bool:
        """確認ウィンドウ内に非ゼロ終了しなければ True."""
        waiter = asyncio.ensure_future(handle.wait())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self._confirm_window)
        finally:
            if not waiter.done():
                waiter.cancel()
        if not done:
            return True
        rc = waiter.result()
        return rc == 0 or handle.killed

    async def _recover(self, failed: ProcessHandle) -> ProcessHandle:
        """失敗したプロセスを無音音声で 1 回だけ再起動する."""
        rc = failed.returncode
        attempt = len(self._commands)
        self._failures.append(
            f"--- attempt {attempt} exited with code {rc} ---\n{failed.diagnostics}"
        )
        failure = PublishFailure(f"FFmpeg exited with code {rc}", rc, failed.diagnostics)

        if self._retried:
            raise TerminalFailure(
                f"FFmpeg failed again after silent-audio retry (code={rc})",
                self.combined_diagnostics,
            ) from failure

        self._retried = True
        logger.warning("%s, retrying once with silent audio", failure)
        if self.on_retry:
            self.on_retry()

        handle = await self._launch(silent=True)
        if not await self._confirm(handle):
            return await self._recover(handle)

        if self.on_recovered:
            self.on_recovered()
        return handle

    async def _monitor(self) -> None:
        """起動後の FFmpeg 終了を監視する."""
        while True:
            handle = self._handle
            rc = await handle.wait()
            if rc == 0 or handle.killed:
                logger.info("FFmpeg exited (status=%s)", handle.exit_status)
                self._closed.set_result(rc)
                return
            try:
                await self._recover(handle)
            except TerminalFailure as e:
                logger.error("%s", e)
                self._closed.set_exception(e)
                return
            except Exception as e:
                # 再起動自体の失敗 (FFmpeg 消失・spawn の OSError) も回復不能
                logger.error("FFmpeg relaunch failed: %s", e)
                failure = TerminalFailure(
                    f"FFmpeg relaunch failed: {e}", self.combined_diagnostics
                )
                failure.__cause__ = e
                self._closed.set_exception(failure)
                return
