"""テスト用のフェイク (外部プロセス・ブラウザを起動しない)."""

import asyncio

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class FakeHandle:
    """ProcessHandle 互換のテスト用ハンドル.

    returncode を指定すると起動直後に終了した扱いになる。
    """

    def __init__(
        self,
        name: str = "fake",
        *,
        returncode: int | None = None,
        diagnostics: str = "",
        cmd: list[str] | None = None,
        env: dict | None = None,
    ):
        self.name = name
        self.cmd = cmd or []
        self.env = env
        self.pid = 4242
        self.returncode = returncode
        self.diagnostics = diagnostics
        self.signals = 0
        self._terminated = False
        self._exited = asyncio.Event()
        if returncode is not None:
            self._exited.set()

    @property
    def is_alive(self) -> bool:
        return self.returncode is None

    @property
    def killed(self) -> bool:
        return self._terminated or (self.returncode is not None and self.returncode < 0)

    @property
    def exit_status(self):
        if self.returncode is None:
            return None
        return "killed" if self.killed else self.returncode

    def exit(self, returncode: int) -> None:
        """プロセス終了をシミュレートする."""
        self.returncode = returncode
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    async def terminate(self, grace: float = 3.0) -> bool:
        if not self.is_alive or self._terminated:
            return False
        self.signals += 1
        self._terminated = True
        self.exit(-15)
        return True


class FakeSpawner:
    """ProcessHandle.spawn 互換. 起動ごとの終了コードを順に与える (None は生存)."""

    def __init__(self, *returncodes: int | None):
        self._script = list(returncodes)
        self.handles: list[FakeHandle] = []

    async def __call__(self, name, cmd, *, env=None) -> FakeHandle:
        rc = self._script.pop(0) if self._script else None
        handle = FakeHandle(
            name,
            returncode=rc,
            diagnostics=f"{name} attempt {len(self.handles) + 1}: Connection refused",
            cmd=list(cmd),
            env=env,
        )
        self.handles.append(handle)
        return handle


async def drain() -> None:
    """バックグラウンドタスクを進める."""
    for _ in range(5):
        await asyncio.sleep(0)


class FakeMouse:
    def __init__(self):
        self.clicks: list[tuple[float, float]] = []

    async def click(self, x, y):
        self.clicks.append((x, y))


class FakePage:
    """セレクタとラベル付き要素を持つページ."""

    def __init__(self, selectors=(), labelled=None, goto_error=None, goto_gate=None):
        self.selectors = set(selectors)
        self.labelled = labelled or {}
        self.goto_error = goto_error
        # 設定するとナビゲーションが gate の set まで終わらない
        self.goto_gate: asyncio.Event | None = goto_gate
        self.mouse = FakeMouse()
        self.clicked: list[str] = []
        self.waited: list[tuple[str, int]] = []
        self.routes: list[str] = []
        self.goto_calls: list[dict] = []

    async def wait_for_selector(self, selector, timeout):
        self.waited.append((selector, timeout))
        if selector not in self.selectors:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def click(self, selector):
        self.clicked.append(selector)

    async def evaluate(self, script, needle):
        return self.labelled.get(needle, [])

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def goto(self, url, wait_until, timeout):
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self.goto_gate is not None:
            await self.goto_gate.wait()
        if self.goto_error:
            raise self.goto_error


class FakeBrowser:
    def __init__(self, page):
        self.page = page
        self.closed = 0
        self.viewport = None

    async def new_page(self, viewport):
        self.viewport = viewport
        return self.page

    async def close(self):
        self.closed += 1


class FakePlaywright:
    """async_playwright() 互換のファクトリ."""

    def __init__(self, page):
        self.browser = FakeBrowser(page)
        self.launch_kwargs = None
        self.stopped = 0
        self.chromium = self

    def __call__(self):
        return self

    async def start(self):
        return self

    async def launch(self, **kwargs):
        self.launch_kwargs = kwargs
        return self.browser

    async def stop(self):
        self.stopped += 1


