"""web-page-stream: Web page streaming via Xvfb + PulseAudio + Playwright + FFmpeg (RTMPS)."""

from web_page_stream.audio import AudioRoute, AudioRouter
from web_page_stream.browser import RenderController, RenderSession, TriggerResult
from web_page_stream.config import InteractionSpec, QualityTier, SessionConfig
from web_page_stream.errors import (
    PublishFailure,
    RoutingConvergenceTimeout,
    SetupFailure,
    StreamError,
    TerminalFailure,
    TriggerFailure,
)
from web_page_stream.process import ProcessHandle
from web_page_stream.publisher import Publisher
from web_page_stream.session import CaptureSession, SessionState
from web_page_stream.xvfb import DisplayManager, DisplaySurface

__all__ = [
    "AudioRoute",
    "AudioRouter",
    "CaptureSession",
    "DisplayManager",
    "DisplaySurface",
    "InteractionSpec",
    "ProcessHandle",
    "PublishFailure",
    "Publisher",
    "QualityTier",
    "RenderController",
    "RenderSession",
    "RoutingConvergenceTimeout",
    "SessionConfig",
    "SessionState",
    "SetupFailure",
    "StreamError",
    "TerminalFailure",
    "TriggerFailure",
    "TriggerResult",
]
