"""キャプチャセッション設定."""

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_FRAMERATE = 30

# lightweight tier はデフォルト fps (30) を 1fps に置き換える
LIGHTWEIGHT_FRAMERATE = 1

DEFAULT_CLICK_DELAY = 1.0  # 秒
DEFAULT_DISPLAY_NUMBER = 99

_TRUE_VALUES = ("1", "true", "yes", "on")


class QualityTier(str, Enum):
    """エンコード品質ティア."""

    STANDARD = "standard"
    LIGHTWEIGHT = "lightweight"


@dataclass(frozen=True)
class EncodeProfile:
    """品質ティアごとのエンコードパラメータ.

    Attributes:
        preset: x264 preset
        crf: Constant Rate Factor (大きいほど低画質・低負荷)
        maxrate_kbps: 最大ビットレート (kbps)
        bufsize_kbps: VBV バッファサイズ (kbps)
        threads: エンコードスレッド上限 (None は FFmpeg の自動判定)
        audio_bitrate_kbps: AAC ビットレート (kbps)
        audio_sample_rate: 音声サンプルレート (Hz)
        keyframe_seconds: キーフレーム間隔 (秒)
    """

    preset: str
    crf: int
    maxrate_kbps: int
    bufsize_kbps: int
    threads: int | None
    audio_bitrate_kbps: int
    audio_sample_rate: int
    keyframe_seconds: int


PROFILES: dict[QualityTier, EncodeProfile] = {
    QualityTier.STANDARD: EncodeProfile(
        preset="veryfast",
        crf=23,
        maxrate_kbps=4000,
        bufsize_kbps=8000,
        threads=None,
        audio_bitrate_kbps=128,
        audio_sample_rate=44100,
        keyframe_seconds=2,
    ),
    QualityTier.LIGHTWEIGHT: EncodeProfile(
        preset="ultrafast",
        crf=28,
        maxrate_kbps=1500,
        bufsize_kbps=3000,
        threads=2,
        audio_bitrate_kbps=64,
        audio_sample_rate=22050,
        keyframe_seconds=1,
    ),
}


@dataclass
class InteractionSpec:
    """音声再生を解除するためのクリック指定.

    Attributes:
        selector: クリックする要素の CSS セレクタ
        x: クリック X 座標 (selector 未指定時)
        y: クリック Y 座標 (selector 未指定時)
        delay: クリック後の待機時間 (秒)
    """

    selector: str | None = None
    x: int | None = None
    y: int | None = None
    delay: float = DEFAULT_CLICK_DELAY

    def __post_init__(self) -> None:
        if (self.x is None) != (self.y is None):
            raise ValueError("Click coordinates require both x and y")
        if not self.selector and self.x is None:
            raise ValueError("Interaction needs a selector or coordinates")
        if self.delay < 0:
            raise ValueError("Click delay must not be negative")

    @property
    def has_coordinates(self) -> bool:
        return self.x is not None and self.y is not None


def _default_use_virtual_display() -> bool:
    if os.environ.get("USE_VIRTUAL_DISPLAY", "").lower() in _TRUE_VALUES:
        return True
    return sys.platform.startswith("linux") and not os.environ.get("DISPLAY")


def _default_route_audio() -> bool:
    return sys.platform.startswith("linux")


@dataclass
class SessionConfig:
    """1 回のキャプチャセッションの設定.

    出力解像度を省略した場合はレンダリング解像度をそのまま使う。

    Attributes:
        url: 表示するページの URL
        publish_url: 配信先 (RTMPS) URL
        width: レンダリング幅 (px)
        height: レンダリング高さ (px)
        output_width: 出力幅 (px, 省略時は width)
        output_height: 出力高さ (px, 省略時は height)
        framerate: キャプチャフレームレート (fps)
        tier: 品質ティア
        interaction: 音声再生解除用のクリック指定
        audio_device: 音声入力デバイスの明示指定
        video_device: 映像入力デバイスの明示指定 (macOS)
        use_virtual_display: Xvfb を起動するか
        route_audio: PulseAudio のルーティングを行うか
        display_number: Xvfb のディスプレイ番号
    """

    url: str
    publish_url: str
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    output_width: int | None = None
    output_height: int | None = None
    framerate: int = DEFAULT_FRAMERATE
    tier: QualityTier = QualityTier.STANDARD
    interaction: InteractionSpec | None = None
    audio_device: str | None = None
    video_device: str | None = None
    use_virtual_display: bool = field(default_factory=_default_use_virtual_display)
    route_audio: bool = field(default_factory=_default_route_audio)
    display_number: int = DEFAULT_DISPLAY_NUMBER

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("Page URL is required")
        if not self.publish_url:
            raise ValueError("Publish URL is required")
        self.tier = QualityTier(self.tier)
        if self.output_width is None:
            self.output_width = self.width
        if self.output_height is None:
            self.output_height = self.height
        for name in ("width", "height", "output_width", "output_height", "framerate"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def lightweight(self) -> bool:
        return self.tier is QualityTier.LIGHTWEIGHT

    @property
    def profile(self) -> EncodeProfile:
        return PROFILES[self.tier]

    @property
    def effective_framerate(self) -> int:
        """ティア適用後のフレームレート.

        lightweight はデフォルト値 (30) のときだけ 1fps に下げ、明示指定の値はそのまま使う。
        """
        if self.lightweight and self.framerate == DEFAULT_FRAMERATE:
            return LIGHTWEIGHT_FRAMERATE
        return self.framerate

    @property
    def keyframe_interval(self) -> int:
        """キーフレーム間隔 (フレーム数, 最低 1).

        standard は 2 秒分、lightweight は 1 秒分 (1fps なら毎フレーム)。
        """
        return max(1, self.effective_framerate * self.profile.keyframe_seconds)

    @property
    def needs_scaling(self) -> bool:
        return (self.output_width, self.output_height) != (self.width, self.height)

    @property
    def display(self) -> str:
        """X11 ディスプレイ名 (例: ":99")."""
        return f":{self.display_number}"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def output_resolution(self) -> str:
        return f"{self.output_width}x{self.output_height}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "SessionConfig":
        """環境変数から設定を組み立てる.

        overrides に None 以外の値を渡すと環境変数より優先する。

        Raises:
            ValueError: URL が未設定、または数値の形式が不正な場合
        """
        env = os.environ if environ is None else environ

        def _int(name: str) -> int | None:
            value = env.get(name)
            return int(value) if value not in (None, "") else None

        values: dict = {
            "url": env.get("WEBPAGE_URL", ""),
            "publish_url": env.get("RTMPS_URL", ""),
            "width": _int("WIDTH"),
            "height": _int("HEIGHT"),
            "output_width": _int("OUTPUT_WIDTH"),
            "output_height": _int("OUTPUT_HEIGHT"),
            "framerate": _int("FPS"),
            "audio_device": env.get("AUDIO_DEVICE") or None,
            "video_device": env.get("VIDEO_DEVICE") or None,
            "display_number": _int("DISPLAY_NUMBER"),
        }
        if env.get("LIGHTWEIGHT", "").lower() in _TRUE_VALUES:
            values["tier"] = QualityTier.LIGHTWEIGHT
        if env.get("USE_VIRTUAL_DISPLAY", "").lower() in _TRUE_VALUES:
            values["use_virtual_display"] = True

        click = {
            "selector": env.get("CLICK_SELECTOR") or None,
            "x": _int("CLICK_X"),
            "y": _int("CLICK_Y"),
        }
        delay_ms = _int("CLICK_DELAY")
        values.update({f"click_{k}": v for k, v in click.items()})
        values["click_delay"] = delay_ms / 1000 if delay_ms is not None else None

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.build(**values)

    @classmethod
    def build(
        cls,
        *,
        click_selector: str | None = None,
        click_x: int | None = None,
        click_y: int | None = None,
        click_delay: float | None = None,
        **values,
    ) -> "SessionConfig":
        """フラットな値から設定を組み立てる (None は未指定扱い)."""
        interaction = None
        if click_selector or click_x is not None or click_y is not None:
            interaction = InteractionSpec(
                selector=click_selector,
                x=click_x,
                y=click_y,
                delay=DEFAULT_CLICK_DELAY if click_delay is None else click_delay,
            )
        kwargs = {k: v for k, v in values.items() if v is not None}
        return cls(interaction=interaction, **kwargs)
