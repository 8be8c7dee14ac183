"""PulseAudio ルーティング管理.

セッション用の null sink を作成してデフォルトに設定し、
ブラウザの音声がその monitor から FFmpeg で読めるようにする。
デーモン操作はすべて pactl 経由で行う。
"""

import asyncio
import logging
import os
import shutil
import tempfile
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import NamedTuple

from web_page_stream.errors import RoutingConvergenceTimeout, SetupFailure
from web_page_stream.process import ProcessHandle, poll_until, run_command

logger = logging.getLogger(__name__)

# セッションで作成する null sink の名前
SINK_NAME = "web_page_stream"

# 自分で作った loopback の sink-input は音源として数えない
LOOPBACK_DRIVER = "module-loopback"

CommandRunner = Callable[..., Awaitable[tuple[int, str, str]]]


class PactlError(RuntimeError):
    """pactl コマンドの失敗."""


class SinkInput(NamedTuple):
    index: str
    sink: str
    driver: str


@dataclass
class AudioRoute:
    """作成したルーティング.

    Attributes:
        sink_name: null sink 名
        sink_module_id: null sink のモジュール ID
        loopback_module_ids: sink に音声を流し込む loopback モジュール ID
        is_default: デフォルト sink に設定済みか
        env: 音声クライアント (ブラウザ / FFmpeg) に渡す環境変数
    """

    sink_name: str
    sink_module_id: str
    loopback_module_ids: list[str] = field(default_factory=list)
    is_default: bool = False
    env: dict[str, str] = field(default_factory=dict)

    @property
    def monitor(self) -> str:
        """FFmpeg の音声入力に使う monitor source 名."""
        return f"{self.sink_name}.monitor"


class AudioRouter:
    """PulseAudio デーモンと null sink を管理する.

    ホストのデーモンに接続できない場合は、セッション専用の
    runtime/state ディレクトリでデーモンを起動する。

    Usage:
        router = AudioRouter()
        route = await router.establish()
        ...
        await router.await_convergence()
        ...
        await router.teardown()
    """

    # デーモン起動ポーリング: 0.5s 間隔 × 10 回
    _READY_ATTEMPTS = 10
    _READY_INTERVAL = 0.5

    _COMMAND_TIMEOUT = 10.0
    _STOP_TIMEOUT = 3.0

    def __init__(
        self,
        sink_name: str = SINK_NAME,
        *,
        runner: CommandRunner = run_command,
        spawn: Callable[..., Awaitable[ProcessHandle]] = ProcessHandle.spawn,
        pactl: str = "pactl",
        daemon: str = "pulseaudio",
    ):
        self._sink_name = sink_name
        self._runner = runner
        self._spawn = spawn
        self._pactl_bin = pactl
        self._daemon_bin = daemon
        self._env: dict[str, str] = {}
        self._runtime_dir: str | None = None
        self._daemon: ProcessHandle | None = None
        self._route: AudioRoute | None = None

    @property
    def sink_name(self) -> str:
        return self._sink_name

    @property
    def route(self) -> AudioRoute | None:
        return self._route

    @property
    def client_env(self) -> dict[str, str]:
        """音声クライアントに渡す環境変数 (ホストのデーモン使用時は空)."""
        return dict(self._env)

    @property
    def owns_daemon(self) -> bool:
        return self._daemon is not None

    async def establish(self) -> AudioRoute:
        """デーモンを確保し、null sink を作成してデフォルトに設定する.

        既存のルートの sink が残っていればそのまま返す。
        sink が消失していた場合は最初から作り直す。

        Returns:
            作成したルート

        Raises:
            SetupFailure: デーモンに接続できない、または sink を作成できない場合
        """
        if self._route is not None:
            if await self.sink_exists():
                return self._route
            logger.warning("Sink %s lost, re-creating route", self._sink_name)
            await self._unload_modules(self._route)
            self._route = None

        # 1-2. デーモン確保
        await self._ensure_daemon()

        # 3. null sink 作成 + デフォルト設定
        try:
            module_id = (
                await self._pactl(
                    "load-module",
                    "module-null-sink",
                    f"sink_name={self._sink_name}",
                    f"sink_properties=device.description={self._sink_name}",
                )
            ).strip()
            route = AudioRoute(
                sink_name=self._sink_name,
                sink_module_id=module_id,
                env=dict(self._env),
            )
            # teardown で確実に unload できるよう先に登録
            self._route = route
            await self._pactl("set-default-sink", self._sink_name)
            route.is_default = True
        except PactlError as e:
            raise SetupFailure(f"Failed to create sink {self._sink_name}: {e}") from e

        # 4. 既存の音源を loopback で sink に流し込む
        for source in await self._list_sources():
            if source == route.monitor:
                continue
            try:
                loopback_id = (
                    await self._pactl(
                        "load-module",
                        "module-loopback",
                        f"source={source}",
                        f"sink={self._sink_name}",
                    )
                ).strip()
            except PactlError as e:
                logger.warning("Loopback from %s failed: %s", source, e)
                continue
            route.loopback_module_ids.append(loopback_id)
            logger.info("Loopback %s -> %s (module %s)", source, self._sink_name, loopback_id)

        logger.info(
            "Audio route established: sink=%s module=%s loopbacks=%d",
            route.sink_name,
            route.sink_module_id,
            len(route.loopback_module_ids),
        )
        return route

    async def sink_exists(self) -> bool:
        return await self._sink_index() is not None

    async def is_routed(self) -> bool:
        """全 sink-input がセッション sink に向いているか確認する.

        他の sink に向いている sink-input はセッション sink に移動する。
        loopback 以外の sink-input が 1 つもない場合は False。
        """
        if self._route is None:
            return False

        sink_index = await self._sink_index()
        if sink_index is None:
            logger.warning("Sink %s not found", self._sink_name)
            return False

        producers = [
            si for si in await self._list_sink_inputs() if LOOPBACK_DRIVER not in si.driver
        ]
        if not producers:
            logger.debug("No sink-inputs yet")
            return False

        for si in producers:
            if si.sink == sink_index:
                continue
            logger.info(
                "Moving sink-input %s from sink %s to %s", si.index, si.sink, self._sink_name
            )
            try:
                await self._pactl("move-sink-input", si.index, self._sink_name)
            except PactlError as e:
                logger.warning("Failed to move sink-input %s: %s", si.index, e)
                return False
        return True

    async def await_convergence(self, attempts: int = 20, interval: float = 2.0) -> None:
        """音声がセッション sink に流れるまでポーリングする.

        sink が消失していた場合はルートを作り直す。

        Raises:
            RoutingConvergenceTimeout: attempts 回以内に確認できなかった場合
        """

        async def _check() -> bool:
            try:
                if not await self.sink_exists():
                    await self.establish()
                return await self.is_routed()
            except PactlError as e:
                logger.debug("Routing check failed: %s", e)
                return False

        if await poll_until(_check, attempts=attempts, interval=interval):
            logger.info("Audio routed to %s", self._sink_name)
            return
        raise RoutingConvergenceTimeout(
            f"No audio routed to {self._sink_name} after {attempts} attempts"
        )

    async def teardown(self) -> None:
        """モジュールを unload し、自分で起動したデーモンを停止する."""
        route, self._route = self._route, None
        if route is not None:
            await self._unload_modules(route)

        daemon, self._daemon = self._daemon, None
        if daemon is not None:
            await daemon.terminate(self._STOP_TIMEOUT)

        runtime_dir, self._runtime_dir = self._runtime_dir, None
        if runtime_dir:
            shutil.rmtree(runtime_dir, ignore_errors=True)
        self._env = {}

    async def _ensure_daemon(self) -> None:
        """デーモンに接続できなければセッション専用で起動する."""
        if await self._is_reachable():
            return

        if not self._env:
            self._env = self._create_scoped_env()
            if await self._is_reachable():
                return

        if self._daemon is not None:
            await self._daemon.terminate(self._STOP_TIMEOUT)

        try:
            daemon = await self._spawn(
                "PulseAudio",
                [
                    self._daemon_bin,
                    "--daemonize=no",
                    "--exit-idle-time=-1",
                    "--disallow-exit",
                    "--log-target=stderr",
                ],
                env=self._env,
            )
        except FileNotFoundError as e:
            raise SetupFailure(f"PulseAudio is not installed: {e}") from e
        self._daemon = daemon

        async def _ready() -> bool:
            if not daemon.is_alive:
                rc = await daemon.wait()
                raise SetupFailure(
                    f"PulseAudio exited during startup (code={rc})", daemon.diagnostics
                )
            return await self._is_reachable()

        if not await poll_until(
            _ready, attempts=self._READY_ATTEMPTS, interval=self._READY_INTERVAL
        ):
            await daemon.terminate(self._STOP_TIMEOUT)
            raise SetupFailure(
                f"PulseAudio not reachable after {self._READY_ATTEMPTS} attempts",
                daemon.diagnostics,
            )
        logger.info("PulseAudio ready (runtime=%s)", self._runtime_dir)

    def _create_scoped_env(self) -> dict[str, str]:
        """ホストのデーモンと衝突しない runtime/state パスを作る."""
        self._runtime_dir = tempfile.mkdtemp(prefix="web-page-stream-pulse-")
        runtime = os.path.join(self._runtime_dir, "runtime")
        state = os.path.join(self._runtime_dir, "state")
        os.makedirs(runtime, mode=0o700, exist_ok=True)
        os.makedirs(state, mode=0o700, exist_ok=True)
        return {
            "XDG_RUNTIME_DIR": self._runtime_dir,
            "PULSE_RUNTIME_PATH": runtime,
            "PULSE_STATE_PATH": state,
            "PULSE_SERVER": f"unix:{os.path.join(runtime, 'native')}",
        }

    async def _is_reachable(self) -> bool:
        try:
            await self._pactl("info")
            return True
        except PactlError:
            return False

    async def _unload_modules(self, route: AudioRoute) -> None:
        for module_id in [*reversed(route.loopback_module_ids), route.sink_module_id]:
            try:
                await self._pactl("unload-module", module_id)
            except PactlError as e:
                logger.warning("Failed to unload module %s: %s", module_id, e)

    async def _sink_index(self) -> str | None:
        for parts in await self._list_short("sinks"):
            if len(parts) >= 2 and parts[1] == self._sink_name:
                return parts[0]
        return None

    async def _list_sources(self) -> list[str]:
        try:
            rows = await self._list_short("sources")
        except PactlError as e:
            logger.warning("Failed to list sources: %s", e)
            return []
        return [parts[1] for parts in rows if len(parts) >= 2]

    async def _list_sink_inputs(self) -> list[SinkInput]:
        return [
            SinkInput(index=parts[0], sink=parts[1], driver=parts[3])
            for parts in await self._list_short("sink-inputs")
            if len(parts) >= 4
        ]

    async def _list_short(self, kind: str) -> list[list[str]]:
        """`pactl list <kind> short` の各行をタブ区切りで返す."""
        output = await self._pactl("list", kind, "short")
        return [line.split("\t") for line in output.splitlines() if line.strip()]

    async def _pactl(self, *args: str) -> str:
        cmd: Sequence[str] = [self._pactl_bin, *args]
        env: Mapping[str, str] = self._env
        try:
            rc, stdout, stderr = await self._runner(
                cmd, env=env, timeout=self._COMMAND_TIMEOUT
            )
        except FileNotFoundError as e:
            raise PactlError(f"pactl is not installed: {e}") from e
        except asyncio.TimeoutError as e:
            raise PactlError(f"pactl {' '.join(args)} timed out") from e
        if rc != 0:
            raise PactlError(f"pactl {' '.join(args)} failed ({rc}): {stderr.strip()}")
        return stdout
