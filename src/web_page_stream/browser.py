"""Playwright Chromium によるページ描画とインタラクション.

仮想ディスプレイ上でヘッドフル Chromium を起動してページを開き、
必要なら要素クリックで音声再生を解除する。
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any
from urllib.parse import urlparse

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Route, async_playwright

from web_page_stream.config import InteractionSpec, SessionConfig
from web_page_stream.errors import SetupFailure, TriggerFailure
from web_page_stream.xvfb import DisplaySurface

logger = logging.getLogger(__name__)

# サンドボックス・テレメトリ・自動更新を無効化し、ジェスチャなしの自動再生を許可する。
# 音声をキャプチャするため --mute-audio は付けない。
BROWSER_ARGS = [
    "--autoplay-policy=no-user-gesture-required",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-accelerated-2d-canvas",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-update",
    "--disable-default-apps",
    "--disable-domain-reliability",
    "--disable-extensions",
    "--disable-features=TranslateUI,IsolateOrigins,site-per-process",
    "--disable-hang-monitor",
    "--disable-notifications",
    "--disable-popup-blocking",
    "--disable-sync",
    "--disable-translate",
    "--hide-scrollbars",
    "--metrics-recording-only",
    "--no-first-run",
    "--no-pings",
    "--password-store=basic",
    "--use-mock-keychain",
    "--window-position=0,0",
]

LIGHTWEIGHT_ARGS = [
    "--disable-plugins",
    "--disable-plugins-discovery",
    "--disable-preconnect",
    "--aggressive-cache-discard",
]

AUDIO_EXTENSIONS = (".mp3", ".ogg", ".oga", ".wav", ".aac", ".m4a", ".opus", ".flac", ".weba")

# 要素メタデータを返す DOM クエリ: ラベルに needle を含む可視要素の中心座標
LABEL_QUERY = """
(needle) => {
  const query = 'button, [role="button"], a, input[type="button"], input[type="submit"], [aria-label], [title]';
  const results = [];
  for (const el of document.querySelectorAll(query)) {
    const label = (el.getAttribute('aria-label') || el.getAttribute('title') ||
                   el.getAttribute('alt') || el.value || el.innerText || '').trim();
    if (!label.toLowerCase().includes(needle)) continue;
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) continue;
    results.push({
      tag: el.tagName.toLowerCase(),
      label: label.slice(0, 80),
      x: rect.left + rect.width / 2,
      y: rect.top + rect.height / 2,
      width: rect.width,
      height: rect.height,
    });
  }
  return results;
}
"""


def is_audio_request(url: str, accept: str = "") -> bool:
    """リクエストが音声メディアか判定する (拡張子または Accept ヘッダ)."""
    path = urlparse(url).path.lower()
    return path.endswith(AUDIO_EXTENSIONS) or "audio/" in accept.lower()


def admit_request(resource_type: str, url: str, accept: str = "") -> bool:
    """lightweight tier のリソース許可ポリシー.

    画像と音声以外のメディアをブロックし、HTML / スクリプト / CSS /
    フォント / 音声は通す（レイアウトと音を保つ）。
    """
    if resource_type == "image":
        return False
    if resource_type == "media":
        return is_audio_request(url, accept)
    return True


def selector_variants(selector: str) -> list[str]:
    """引用符を正規化したセレクタの候補を返す (元のセレクタは含まない).

    環境変数経由で渡されたセレクタの全角引用符・エスケープ・外側の引用符を吸収する。
    """
    variants: list[str] = []

    def _add(value: str) -> None:
        if value and value != selector and value not in variants:
            variants.append(value)

    normalized = selector.translate(
        str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
    )
    _add(normalized)
    _add(normalized.replace('\\"', '"').replace("\\'", "'"))
    _add(normalized.replace('"', "'"))
    _add(normalized.replace("'", '"'))
    _add(normalized.strip().strip("'\"").strip())
    return variants


@dataclass
class ElementMatch:
    """LABEL_QUERY が返す要素メタデータ."""

    tag: str
    label: str
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0

    @classmethod
    def from_metadata(cls, data: dict[str, Any]) -> "ElementMatch":
        return cls(
            tag=str(data.get("tag", "")),
            label=str(data.get("label", "")),
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(data.get("width", 0)),
            height=float(data.get("height", 0)),
        )


@dataclass
class TriggerResult:
    """インタラクションの結果 (失敗してもセッションは継続する)."""

    triggered: bool
    strategy: str | None = None
    detail: str = ""


@dataclass
class Candidate:
    """インタラクション候補. attempt は成功時に詳細を返し、失敗時は例外を送出する."""

    name: str
    attempt: Callable[[Page], Awaitable[str]]


@dataclass
class RenderSession:
    """起動したブラウザとページ."""

    playwright: Any
    browser: Any
    page: Page
    display: str
    url: str
    closed: bool = field(default=False)


class RenderController:
    """Chromium の起動・ページ表示・クリック操作を行う.

    Usage:
        controller = RenderController()
        session = await controller.open(config, surface, env=route.env)
        result = await controller.interact(session, config.interaction)
        ...
        await controller.close(session)
    """

    # ナビゲーション完了待ち (standard: networkidle / lightweight: DOMContentLoaded)
    _NAV_TIMEOUT_MS = 30_000
    _LIGHTWEIGHT_NAV_TIMEOUT_MS = 10_000

    # ナビゲーション後の待機
    _SETTLE_DELAY = 2.0
    _LIGHTWEIGHT_SETTLE_DELAY = 1.0

    _SELECTOR_TIMEOUT_MS = 5_000
    _VARIANT_TIMEOUT_MS = 1_000

    # pause → play の間隔
    _TOGGLE_DELAY = 0.5

    def __init__(self, playwright_factory: Callable[[], Any] = async_playwright):
        self._playwright_factory = playwright_factory

    @staticmethod
    def launch_args(config: SessionConfig, surface: DisplaySurface) -> list[str]:
        """Chromium 起動引数を構築する (同じ入力には同じ結果)."""
        args = list(BROWSER_ARGS)
        args.append(f"--window-size={config.width},{config.height}")
        if surface.owned:
            args.append(f"--display={surface.display}")
        if config.lightweight:
            args.extend(LIGHTWEIGHT_ARGS)
        return args

    async def open(
        self,
        config: SessionConfig,
        surface: DisplaySurface,
        env: dict[str, str] | None = None,
    ) -> RenderSession:
        """Chromium を起動してページを開く.

        Args:
            config: セッション設定
            surface: 描画先ディスプレイ
            env: ブラウザプロセスに追加する環境変数 (PulseAudio 接続先など)

        Returns:
            起動したセッション

        Raises:
            SetupFailure: 起動またはナビゲーションに失敗した場合
        """
        pw = None
        browser = None
        try:
            pw = await self._playwright_factory().start()
            browser = await pw.chromium.launch(
                headless=False,
                args=self.launch_args(config, surface),
                env={**os.environ, "DISPLAY": surface.display, **(env or {})},
            )
            page = await browser.new_page(
                viewport={"width": config.width, "height": config.height}
            )
            if config.lightweight:
                await page.route("**/*", self._admit)

            logger.info("Navigating to %s", config.url)
            if config.lightweight:
                await page.goto(
                    config.url,
                    wait_until="domcontentloaded",
                    timeout=self._LIGHTWEIGHT_NAV_TIMEOUT_MS,
                )
            else:
                await page.goto(
                    config.url, wait_until="networkidle", timeout=self._NAV_TIMEOUT_MS
                )
            await asyncio.sleep(
                self._LIGHTWEIGHT_SETTLE_DELAY if config.lightweight else self._SETTLE_DELAY
            )
        except asyncio.CancelledError:
            # 起動途中で停止された: セッションを返さないのでここで閉じる
            logger.info("Browser startup cancelled for %s", config.url)
            await self._shutdown(browser, pw)
            raise
        except Exception as e:
            logger.error("Failed to open %s: %s", config.url, e)
            await self._shutdown(browser, pw)
            raise SetupFailure(f"Failed to open {config.url}: {e}") from e

        logger.info(
            "Browser ready on %s: %s (%dx%d)",
            surface.display,
            config.url,
            config.width,
            config.height,
        )
        return RenderSession(
            playwright=pw, browser=browser, page=page, display=surface.display, url=config.url
        )

    def candidates(self, spec: InteractionSpec) -> list[Candidate]:
        """評価順のインタラクション候補リスト."""
        result: list[Candidate] = []
        if spec.selector:
            result.append(
                Candidate(
                    "selector",
                    partial(self._click_selector, spec.selector, self._SELECTOR_TIMEOUT_MS),
                )
            )
            result.extend(
                Candidate(
                    "selector-variant",
                    partial(self._click_selector, variant, self._VARIANT_TIMEOUT_MS),
                )
                for variant in selector_variants(spec.selector)
            )
            result.append(Candidate("play-label", self._click_play_label))
            result.append(Candidate("pause-toggle", self._toggle_pause))
        if spec.has_coordinates:
            result.append(
                Candidate("coordinates", partial(self._click_point, spec.x, spec.y))
            )
        return result

    async def interact(
        self, session: RenderSession, spec: InteractionSpec | None
    ) -> TriggerResult:
        """候補を順に試し、最初に成功したものを採用する.

        失敗はログに出すだけで例外は送出しない（自動再生するページもあるため）。
        """
        if spec is None:
            return TriggerResult(triggered=False, detail="no interaction configured")

        failures: list[str] = []
        for candidate in self.candidates(spec):
            try:
                detail = await candidate.attempt(session.page)
            except (TriggerFailure, PlaywrightError) as e:
                logger.debug("Interaction %s failed: %s", candidate.name, e)
                failures.append(f"{candidate.name}: {e}")
                continue
            except Exception as e:
                logger.warning("Interaction %s raised: %s", candidate.name, e)
                failures.append(f"{candidate.name}: {e}")
                continue

            logger.info("Interaction succeeded via %s (%s)", candidate.name, detail)
            if spec.delay > 0:
                await asyncio.sleep(spec.delay)
            return TriggerResult(triggered=True, strategy=candidate.name, detail=detail)

        summary = "; ".join(failures)
        logger.warning("Interaction failed, continuing without trigger: %s", summary)
        return TriggerResult(triggered=False, detail=summary)

    async def close(self, session: RenderSession) -> None:
        """ブラウザと Playwright を終了する. 終了済みなら何もしない."""
        if session.closed:
            return
        session.closed = True
        await self._shutdown(session.browser, session.playwright)
        logger.info("Browser closed for %s", session.url)

    async def _shutdown(self, browser: Any, pw: Any) -> None:
        if browser:
            try:
                await browser.close()
            except Exception:
                logger.exception("Error closing browser")
        if pw:
            try:
                await pw.stop()
            except Exception:
                logger.exception("Error stopping playwright")

    @staticmethod
    async def _admit(route: Route) -> None:
        request = route.request
        try:
            if admit_request(
                request.resource_type, request.url, request.headers.get("accept", "")
            ):
                await route.continue_()
            else:
                await route.abort()
        except PlaywrightError as e:
            # ページ遷移中に破棄されたリクエスト
            logger.debug("Request routing failed for %s: %s", request.url, e)

    async def _click_selector(self, selector: str, timeout_ms: int, page: Page) -> str:
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightError as e:
            raise TriggerFailure(f"{selector!r} not found") from e
        await page.click(selector)
        return f"clicked {selector!r}"

    async def _click_point(self, x: int, y: int, page: Page) -> str:
        await page.mouse.click(x, y)
        return f"clicked ({x}, {y})"

    async def _find_labelled(self, page: Page, needle: str) -> list[ElementMatch]:
        metadata = await page.evaluate(LABEL_QUERY, needle)
        return [ElementMatch.from_metadata(item) for item in metadata or []]

    async def _click_play_label(self, page: Page) -> str:
        matches = await self._find_labelled(page, "play")
        if not matches:
            raise TriggerFailure("no element labelled 'play'")
        target = matches[0]
        await page.mouse.click(target.x, target.y)
        return f"clicked <{target.tag}> {target.label!r}"

    async def _toggle_pause(self, page: Page) -> str:
        """再生中のプレイヤーを pause → play して新しい音声ストリームを作る."""
        matches = await self._find_labelled(page, "pause")
        if not matches:
            raise TriggerFailure("no element labelled 'pause'")
        target = matches[0]
        await page.mouse.click(target.x, target.y)
        await asyncio.sleep(self._TOGGLE_DELAY)
        await page.mouse.click(target.x, target.y)
        return f"toggled <{target.tag}> {target.label!r}"
