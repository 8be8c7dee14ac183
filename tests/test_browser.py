"""RenderController のテスト (Playwright はフェイク)."""

import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from helpers import FakeHandle, FakePage, FakePlaywright, drain
from web_page_stream.browser import (
    LIGHTWEIGHT_ARGS,
    RenderController,
    RenderSession,
    admit_request,
    is_audio_request,
    selector_variants,
)
from web_page_stream.config import InteractionSpec, QualityTier, SessionConfig
from web_page_stream.errors import SetupFailure
from web_page_stream.xvfb import DisplaySurface

URL = "https://example.com/player"
PUBLISH = "rtmps://live.example.com/app/key"


def _config(**kwargs) -> SessionConfig:
    return SessionConfig(url=URL, publish_url=PUBLISH, width=1280, height=720, **kwargs)


def _controller(factory=None) -> RenderController:
    controller = RenderController(playwright_factory=factory)
    controller._SETTLE_DELAY = 0
    controller._LIGHTWEIGHT_SETTLE_DELAY = 0
    controller._TOGGLE_DELAY = 0
    return controller


def _session(page) -> RenderSession:
    return RenderSession(playwright=None, browser=None, page=page, display=":99", url=URL)


# ============================================================
# リクエストポリシー
# ============================================================


@pytest.mark.parametrize(
    "resource_type,url,accept,expected",
    [
        ("document", "https://example.com/", "", True),
        ("script", "https://example.com/app.js", "", True),
        ("stylesheet", "https://example.com/app.css", "", True),
        ("font", "https://example.com/a.woff2", "", True),
        ("image", "https://example.com/logo.png", "", False),
        ("media", "https://example.com/video.mp4", "", False),
        ("media", "https://example.com/track.mp3?t=1", "", True),
        ("media", "https://example.com/stream", "audio/webm,*/*", True),
    ],
)
def test_admit_request(resource_type, url, accept, expected):
    """画像と音声以外のメディアだけをブロックする."""
    assert admit_request(resource_type, url, accept) is expected


def test_is_audio_request():
    assert is_audio_request("https://cdn.example.com/a/B.OGG")
    assert not is_audio_request("https://cdn.example.com/a/b.webm")


def test_selector_variants():
    """全角引用符・エスケープ・外側の引用符を正規化する."""
    variants = selector_variants("button[aria-label=“Play”]")
    assert 'button[aria-label="Play"]' in variants
    assert "button[aria-label='Play']" in variants

    assert "button.play" in selector_variants("'button.play'")
    assert 'a[title="x"]' in selector_variants('a[title=\\"x\\"]')
    assert selector_variants("button.play") == []


# ============================================================
# 起動引数
# ============================================================


class TestLaunchArgs:
    """launch_args() のテスト."""

    def test_owned_display(self):
        surface = DisplaySurface(":99", 1280, 720, handle=FakeHandle("Xvfb"))
        args = RenderController.launch_args(_config(), surface)
        assert "--display=:99" in args
        assert "--window-size=1280,720" in args
        assert "--autoplay-policy=no-user-gesture-required" in args
        assert "--mute-audio" not in args
        assert not set(LIGHTWEIGHT_ARGS) & set(args)

    def test_borrowed_display(self):
        surface = DisplaySurface(":0", 1280, 720)
        args = RenderController.launch_args(_config(), surface)
        assert not any(a.startswith("--display=") for a in args)

    def test_lightweight_args(self):
        surface = DisplaySurface(":99", 1280, 720, handle=FakeHandle("Xvfb"))
        config = _config(tier=QualityTier.LIGHTWEIGHT)
        args = RenderController.launch_args(config, surface)
        assert set(LIGHTWEIGHT_ARGS) <= set(args)
        # 同じ入力には同じ結果
        assert args == RenderController.launch_args(config, surface)


# ============================================================
# open / close
# ============================================================


class TestOpen:
    """open() / close() のテスト."""

    @pytest.mark.asyncio
    async def test_open_standard(self):
        page = FakePage()
        pw = FakePlaywright(page)
        controller = _controller(pw)
        surface = DisplaySurface(":99", 1280, 720, handle=FakeHandle("Xvfb"))

        session = await controller.open(_config(), surface, env={"PULSE_SERVER": "unix:/x"})

        assert session.page is page
        assert session.display == ":99"
        assert pw.launch_kwargs["headless"] is False
        assert pw.launch_kwargs["env"]["DISPLAY"] == ":99"
        assert pw.launch_kwargs["env"]["PULSE_SERVER"] == "unix:/x"
        assert pw.browser.viewport == {"width": 1280, "height": 720}
        assert page.goto_calls == [{"url": URL, "wait_until": "networkidle", "timeout": 30_000}]
        assert page.routes == []

    @pytest.mark.asyncio
    async def test_open_lightweight_installs_filter(self):
        page = FakePage()
        controller = _controller(FakePlaywright(page))
        surface = DisplaySurface(":99", 1280, 720)

        await controller.open(_config(tier=QualityTier.LIGHTWEIGHT), surface)

        assert page.routes == ["**/*"]
        assert page.goto_calls[0]["wait_until"] == "domcontentloaded"
        assert page.goto_calls[0]["timeout"] == 10_000

    @pytest.mark.asyncio
    async def test_navigation_failure_cleans_up(self):
        """ナビゲーション失敗時はブラウザを閉じて SetupFailure."""
        page = FakePage(goto_error=PlaywrightTimeoutError("net::ERR_NAME_NOT_RESOLVED"))
        pw = FakePlaywright(page)
        controller = _controller(pw)

        with pytest.raises(SetupFailure, match="ERR_NAME_NOT_RESOLVED"):
            await controller.open(_config(), DisplaySurface(":99", 1280, 720))

        assert pw.browser.closed == 1
        assert pw.stopped == 1

    @pytest.mark.asyncio
    async def test_cancel_during_navigation_closes_browser(self):
        """ナビゲーション中にキャンセルされてもブラウザを閉じる."""
        page = FakePage(goto_gate=asyncio.Event())
        pw = FakePlaywright(page)
        controller = _controller(pw)

        task = asyncio.create_task(controller.open(_config(), DisplaySurface(":99", 1280, 720)))
        await drain()
        assert page.goto_calls
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert pw.browser.closed == 1
        assert pw.stopped == 1

    @pytest.mark.asyncio
    async def test_cancel_during_settle_closes_browser(self):
        page = FakePage()
        pw = FakePlaywright(page)
        controller = _controller(pw)
        controller._SETTLE_DELAY = 30

        task = asyncio.create_task(controller.open(_config(), DisplaySurface(":99", 1280, 720)))
        await drain()
        assert page.goto_calls
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert pw.browser.closed == 1
        assert pw.stopped == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        page = FakePage()
        pw = FakePlaywright(page)
        controller = _controller(pw)
        session = await controller.open(_config(), DisplaySurface(":99", 1280, 720))

        await controller.close(session)
        await controller.close(session)

        assert session.closed
        assert pw.browser.closed == 1
        assert pw.stopped == 1


# ============================================================
# インタラクション
# ============================================================


class TestInteract:
    """interact() の候補評価順のテスト."""

    @pytest.mark.asyncio
    async def test_no_interaction(self):
        result = await _controller().interact(_session(FakePage()), None)
        assert not result.triggered

    @pytest.mark.asyncio
    async def test_verbatim_selector(self):
        page = FakePage(selectors=["button.play"])
        spec = InteractionSpec(selector="button.play", delay=0)

        result = await _controller().interact(_session(page), spec)

        assert result.triggered
        assert result.strategy == "selector"
        assert page.clicked == ["button.play"]
        assert page.waited == [("button.play", 5_000)]

    @pytest.mark.asyncio
    async def test_quote_normalized_variant(self):
        page = FakePage(selectors=['button[aria-label="Play"]'])
        spec = InteractionSpec(selector="button[aria-label=“Play”]", delay=0)

        result = await _controller().interact(_session(page), spec)

        assert result.strategy == "selector-variant"
        assert page.clicked == ['button[aria-label="Play"]']
        assert page.waited[1][1] == 1_000

    @pytest.mark.asyncio
    async def test_play_label_search(self):
        page = FakePage(
            labelled={"play": [{"tag": "button", "label": "Play", "x": 320, "y": 240}]}
        )
        spec = InteractionSpec(selector="#missing", delay=0)

        result = await _controller().interact(_session(page), spec)

        assert result.strategy == "play-label"
        assert page.mouse.clicks == [(320.0, 240.0)]

    @pytest.mark.asyncio
    async def test_pause_toggle(self):
        """セレクタが無く Pause ボタンがある場合は 2 回クリックする."""
        page = FakePage(
            labelled={"pause": [{"tag": "button", "label": "Pause", "x": 50, "y": 60}]}
        )
        spec = InteractionSpec(selector="button.play", delay=0)

        result = await _controller().interact(_session(page), spec)

        assert result.triggered
        assert result.strategy == "pause-toggle"
        assert page.mouse.clicks == [(50.0, 60.0), (50.0, 60.0)]
        assert page.clicked == []

    @pytest.mark.asyncio
    async def test_coordinates_fallback(self):
        page = FakePage()
        spec = InteractionSpec(selector="#missing", x=100, y=200, delay=0)

        result = await _controller().interact(_session(page), spec)

        assert result.strategy == "coordinates"
        assert page.mouse.clicks == [(100, 200)]

    @pytest.mark.asyncio
    async def test_coordinates_only(self):
        page = FakePage()
        spec = InteractionSpec(x=10, y=20, delay=0)
        controller = _controller()

        assert [c.name for c in controller.candidates(spec)] == ["coordinates"]
        result = await controller.interact(_session(page), spec)
        assert result.triggered

    @pytest.mark.asyncio
    async def test_all_candidates_fail(self):
        """全候補が失敗しても例外は送出しない."""
        page = FakePage()
        spec = InteractionSpec(selector="button.play", delay=0)

        result = await _controller().interact(_session(page), spec)

        assert not result.triggered
        assert result.strategy is None
        assert "selector" in result.detail
        assert "pause-toggle" in result.detail
        assert page.mouse.clicks == []
