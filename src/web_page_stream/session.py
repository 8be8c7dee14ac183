"""キャプチャセッションのオーケストレーション.

Xvfb → PulseAudio → Chromium → (クリック) → (音声収束待ち) → FFmpeg の順に
リソースを確保し、停止・失敗時は確保した順の逆順で解放する。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from web_page_stream.audio import AudioRoute, AudioRouter
from web_page_stream.browser import RenderController, RenderSession, TriggerResult
from web_page_stream.config import SessionConfig
from web_page_stream.errors import StreamError, TerminalFailure
from web_page_stream.process import ProcessHandle
from web_page_stream.publisher import Publisher, mask_url
from web_page_stream.xvfb import DisplayManager, DisplaySurface

logger = logging.getLogger(__name__)

# 音声収束ポーリング: 2s 間隔 × 20 回
CONVERGENCE_ATTEMPTS = 20
CONVERGENCE_INTERVAL = 2.0


class SessionState(str, Enum):
    """セッション状態."""

    IDLE = "idle"
    DISPLAY_UP = "display_up"
    AUDIO_ROUTED = "audio_routed"
    RENDER_READY = "render_ready"
    PUBLISHING = "publishing"
    RETRYING = "retrying"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


_END = {SessionState.STOPPED, SessionState.FAILED}

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.DISPLAY_UP, *_END},
    SessionState.DISPLAY_UP: {SessionState.AUDIO_ROUTED, *_END},
    SessionState.AUDIO_ROUTED: {SessionState.RENDER_READY, *_END},
    SessionState.RENDER_READY: {SessionState.PUBLISHING, *_END},
    SessionState.PUBLISHING: {SessionState.RETRYING, *_END},
    SessionState.RETRYING: {SessionState.PUBLISHING, *_END},
    SessionState.STOPPED: set(),
    SessionState.FAILED: set(),
}


class CaptureSession:
    """1 回分のキャプチャセッション.

    各コンポーネントの解放処理を確保開始時にスタックへ積み、
    stop() / 失敗時にスタックを逆順に解放する。
    解放処理は途中までしか確保できていない状態でも安全に呼べる。

    Usage:
        session = CaptureSession(config)
        session.install_signal_handlers()
        exit_code = await session.run()
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        display_manager: DisplayManager | None = None,
        audio_router: AudioRouter | None = None,
        render_controller: RenderController | None = None,
        publisher: Publisher | None = None,
        convergence_attempts: int = CONVERGENCE_ATTEMPTS,
        convergence_interval: float = CONVERGENCE_INTERVAL,
    ):
        self._config = config
        self._display = display_manager or DisplayManager(config.display_number)
        self._audio = audio_router or AudioRouter()
        self._render = render_controller or RenderController()
        self._publisher = publisher or Publisher()
        self._publisher.on_retry = self._on_publish_retry
        self._publisher.on_recovered = self._on_publish_recovered
        self._convergence_attempts = convergence_attempts
        self._convergence_interval = convergence_interval
        self._created_at = time.time()

        self._state = SessionState.IDLE
        self._history: list[SessionState] = [SessionState.IDLE]
        self._acquired: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        self._released: list[str] = []

        self._surface: DisplaySurface | None = None
        self._route: AudioRoute | None = None
        self._render_session: RenderSession | None = None
        self._publish_handle: ProcessHandle | None = None
        self._trigger: TriggerResult | None = None
        self._error: BaseException | None = None

        self._start_task: asyncio.Task | None = None
        self._signal_task: asyncio.Task | None = None
        self._stop_requested = False
        self._stopped = asyncio.Event()

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[SessionState]:
        """これまでの状態遷移."""
        return list(self._history)

    @property
    def acquired(self) -> list[str]:
        """解放待ちのコンポーネント (確保順)."""
        return [name for name, _ in self._acquired]

    @property
    def released(self) -> list[str]:
        """解放済みのコンポーネント (解放順)."""
        return list(self._released)

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def trigger(self) -> TriggerResult | None:
        return self._trigger

    @property
    def created_at(self) -> float:
        return self._created_at

    async def start(self) -> None:
        """全リソースを順に確保して配信を開始する.

        Raises:
            SetupFailure: Xvfb / PulseAudio / ブラウザの準備に失敗した場合
            TerminalFailure: FFmpeg がリトライ後も失敗した場合
        """
        if self._state is not SessionState.IDLE:
            raise RuntimeError(f"Cannot start session in {self._state.value} state")

        logger.info(
            "Starting session: %s -> %s", self._config.url, mask_url(self._config.publish_url)
        )
        try:
            await self._setup()
        except Exception as e:
            await self._fail(e)
            raise
        logger.info("Session is now publishing")

    async def run(self) -> int:
        """セッションを開始し、配信終了または stop() まで待つ.

        Returns:
            プロセス終了ステータス (正常停止 0, 失敗 1)
        """
        self._start_task = asyncio.create_task(self.start(), name="session-start")
        try:
            await self._start_task
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
            await self._stopped.wait()
            return 0
        except Exception:
            return 1

        closed = asyncio.ensure_future(self._publisher.wait_closed())
        stopped = asyncio.ensure_future(self._stopped.wait())
        await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
        stopped.cancel()

        if self._stop_requested:
            await self._stopped.wait()
            if not closed.done():
                closed.cancel()
            elif not closed.cancelled():
                closed.exception()  # 取得済みにする
            return 0

        try:
            rc = closed.result()
        except TerminalFailure as e:
            await self._fail(e)
            return 1

        logger.info("Publisher exited (code=%s), stopping session", rc)
        await self.stop()
        return 0 if rc in (0, None) else 1

    async def stop(self) -> None:
        """確保済みリソースを逆順に解放する.

        どの状態からでも呼べる（セットアップ途中を含む）。2 回目以降は何もしない。
        """
        if self._stop_requested:
            await self._stopped.wait()
            return
        self._stop_requested = True
        logger.info("Stopping session (state=%s)", self._state.value)

        task = self._start_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass

        await self._teardown()
        if not self._state.terminal:
            self._transition(SessionState.STOPPED)
        self._stopped.set()
        logger.info("Session stopped")

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """SIGINT / SIGTERM で stop() を呼ぶ."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def info(self) -> dict[str, Any]:
        """セッション情報 (API 用)."""
        c = self._config
        return {
            "state": self._state.value,
            "url": c.url,
            "publish_url": mask_url(c.publish_url),
            "display": self._surface.display if self._surface else None,
            "resolution": c.resolution,
            "output_resolution": c.output_resolution,
            "framerate": c.effective_framerate,
            "tier": c.tier.value,
            "audio_sink": self._route.sink_name if self._route else None,
            "triggered": self._trigger.triggered if self._trigger else None,
            "retried": self._publisher.retried,
            "acquired": self.acquired,
            "error": str(self._error) if self._error else None,
            "created_at": self._created_at,
        }

    async def _setup(self) -> None:
        c = self._config

        # 1. 仮想ディスプレイ
        if c.use_virtual_display:
            self._push("display", self._display.release)
            self._surface = await self._display.acquire(c.width, c.height)
        else:
            self._surface = DisplaySurface.ambient(c.width, c.height)
            logger.info("Using existing display %s", self._surface.display)
        self._transition(SessionState.DISPLAY_UP)

        # 2. 音声ルーティング
        env: dict[str, str] = {}
        if c.route_audio:
            self._push("audio", self._audio.teardown)
            self._route = await self._audio.establish()
            env = self._route.env
        self._transition(SessionState.AUDIO_ROUTED)

        # 3. ブラウザ
        self._push("render", self._close_render)
        self._render_session = await self._render.open(c, self._surface, env=env)
        self._transition(SessionState.RENDER_READY)

        # 4. 音声再生の解除 (失敗しても続行)
        self._trigger = await self._render.interact(self._render_session, c.interaction)

        # 5. 音声の収束待ち (失敗しても続行、映像を音声待ちでブロックしない)
        if self._route is not None:
            try:
                await self._audio.await_convergence(
                    self._convergence_attempts, self._convergence_interval
                )
            except StreamError as e:
                logger.warning("Audio routing not confirmed, publishing anyway: %s", e)

        # 6. FFmpeg
        self._push("publisher", self._publisher.stop)
        self._transition(SessionState.PUBLISHING)
        self._publish_handle = await self._publisher.start(
            self._route, self._render_session, c
        )

    def _push(self, name: str, release: Callable[[], Awaitable[None]]) -> None:
        self._acquired.append((name, release))

    async def _teardown(self) -> None:
        """スタックを逆順に解放する. 各ステップは独立 try/except."""
        while self._acquired:
            name, release = self._acquired.pop()
            try:
                await release()
                logger.info("Released %s", name)
            except Exception:
                logger.exception("Error releasing %s", name)
            self._released.append(name)

    async def _close_render(self) -> None:
        session, self._render_session = self._render_session, None
        if session is not None:
            await self._render.close(session)

    async def _fail(self, error: BaseException) -> None:
        self._error = error
        logger.error("Session failed: %s", error)
        diagnostics = getattr(error, "diagnostics", "")
        if diagnostics:
            logger.error("Diagnostics:\n%s", diagnostics)
        await self._teardown()
        if not self._state.terminal:
            self._transition(SessionState.FAILED)
        self._stopped.set()

    def _transition(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid session transition {self._state.value} -> {new.value}"
            )
        if new is SessionState.RETRYING and SessionState.RETRYING in self._history:
            raise RuntimeError("Publisher retry already used")
        logger.debug("Session state %s -> %s", self._state.value, new.value)
        self._state = new
        self._history.append(new)

    def _on_publish_retry(self) -> None:
        if self._state is SessionState.PUBLISHING:
            self._transition(SessionState.RETRYING)

    def _on_publish_recovered(self) -> None:
        if self._state is SessionState.RETRYING:
            self._transition(SessionState.PUBLISHING)

    def _on_signal(self, sig: int) -> None:
        logger.info("Received %s, shutting down", signal.Signals(sig).name)
        if self._signal_task is None:
            self._signal_task = asyncio.ensure_future(self.stop())
