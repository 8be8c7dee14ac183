"""コマンドラインエントリポイント.

コマンドライン引数は環境変数より優先する。

    web-page-stream https://example.com rtmps://live.example.com/app/KEY --lightweight
"""

import argparse
import asyncio
import logging
import os

from web_page_stream.config import QualityTier, SessionConfig
from web_page_stream.session import CaptureSession

logger = logging.getLogger(__name__)

EPILOG = """\
environment variables:
  WEBPAGE_URL, RTMPS_URL, WIDTH, HEIGHT, OUTPUT_WIDTH, OUTPUT_HEIGHT, FPS,
  LIGHTWEIGHT, CLICK_SELECTOR, CLICK_X, CLICK_Y, CLICK_DELAY, AUDIO_DEVICE,
  VIDEO_DEVICE, USE_VIRTUAL_DISPLAY, DISPLAY_NUMBER, LOG_LEVEL
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="web-page-stream",
        description="Stream a web page (video + audio) to an RTMPS endpoint.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("url", nargs="?", help="web page URL (or WEBPAGE_URL)")
    parser.add_argument("publish_url", nargs="?", help="RTMPS endpoint (or RTMPS_URL)")
    parser.add_argument("--width", type=int, help="render width (default: 1920)")
    parser.add_argument("--height", type=int, help="render height (default: 1080)")
    parser.add_argument("--output-width", type=int, help="output width (default: render width)")
    parser.add_argument("--output-height", type=int, help="output height (default: render height)")
    parser.add_argument("--fps", dest="framerate", type=int, help="frame rate (default: 30, lightweight: 1)")
    parser.add_argument(
        "--lightweight",
        dest="tier",
        action="store_const",
        const=QualityTier.LIGHTWEIGHT,
        help="lightweight mode (optimized encoding, 1fps default)",
    )
    parser.add_argument("--click-selector", help='CSS selector to click (e.g. "button.play")')
    parser.add_argument("--click-x", type=int, help="X coordinate to click (requires --click-y)")
    parser.add_argument("--click-y", type=int, help="Y coordinate to click (requires --click-x)")
    parser.add_argument("--click-delay", type=int, help="delay after click in ms (default: 1000)")
    parser.add_argument("--audio-device", help="audio input device override")
    parser.add_argument("--video-device", help="video input device override (macOS)")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="logging level (default: INFO)",
    )
    return parser


def parse_config(argv: list[str] | None = None) -> tuple[SessionConfig, argparse.Namespace]:
    """引数と環境変数から SessionConfig を組み立てる.

    Raises:
        SystemExit: 引数が不正な場合 (argparse)
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    overrides = {
        "url": args.url,
        "publish_url": args.publish_url,
        "width": args.width,
        "height": args.height,
        "output_width": args.output_width,
        "output_height": args.output_height,
        "framerate": args.framerate,
        "tier": args.tier,
        "click_selector": args.click_selector,
        "click_x": args.click_x,
        "click_y": args.click_y,
        "click_delay": args.click_delay / 1000 if args.click_delay is not None else None,
        "audio_device": args.audio_device,
        "video_device": args.video_device,
    }
    try:
        config = SessionConfig.from_env(**overrides)
    except ValueError as e:
        parser.error(str(e))
    return config, args


async def run_session(config: SessionConfig) -> int:
    """シグナルハンドラ付きでセッションを 1 回実行する."""
    session = CaptureSession(config)
    session.install_signal_handlers()
    return await session.run()


def main(argv: list[str] | None = None) -> int:
    config, args = parse_config(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(
        "Platform config: virtual_display=%s route_audio=%s tier=%s",
        config.use_virtual_display,
        config.route_audio,
        config.tier.value,
    )
    return asyncio.run(run_session(config))


if __name__ == "__main__":
    raise SystemExit(main())
