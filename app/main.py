"""FastAPI status / control application.

1 つのキャプチャセッションの開始・状態確認・停止を REST API で提供する。
WEBPAGE_URL と RTMPS_URL が設定されていれば起動時にセッションを開始する。

    uvicorn app.main:app --host 0.0.0.0 --port 3000
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from web_page_stream.config import QualityTier, SessionConfig
from web_page_stream.session import CaptureSession, SessionState

logger = logging.getLogger(__name__)


class SessionRunner:
    """バックグラウンドで 1 セッションを実行する (同時に 1 つまで)."""

    def __init__(self):
        self.session: CaptureSession | None = None
        self.task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self.session is not None and not self.session.state.terminal

    def launch(self, config: SessionConfig) -> CaptureSession:
        """セッションを開始する.

        Raises:
            ValueError: 実行中のセッションがある場合
        """
        if self.active:
            raise ValueError("A session is already active")
        session = CaptureSession(config)
        self.session = session
        self.task = asyncio.create_task(session.run(), name="capture-session")
        logger.info("Session launched for %s", config.url)
        return session

    async def stop(self) -> None:
        """実行中のセッションを停止し、完了を待つ."""
        session, task = self.session, self.task
        if session is not None:
            await session.stop()
        if task is not None:
            try:
                await task
            except Exception:
                logger.exception("Session task ended with error")

    def reset(self) -> None:
        self.session = None
        self.task = None


runner = SessionRunner()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    if os.environ.get("WEBPAGE_URL") and os.environ.get("RTMPS_URL"):
        try:
            runner.launch(SessionConfig.from_env())
        except ValueError as e:
            logger.error("Invalid session configuration: %s", e)
    else:
        logger.info("WEBPAGE_URL / RTMPS_URL not set, waiting for POST /api/session")
    logger.info("web-page-stream server starting")
    yield
    logger.info("web-page-stream server shutting down")
    await runner.stop()


app = FastAPI(
    title="web-page-stream",
    description="Web page streaming via Xvfb + PulseAudio + Playwright + FFmpeg",
    version="0.1.0",
    lifespan=lifespan,
)


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz() -> dict:
    """ヘルスチェック."""
    session = runner.session
    if session is None:
        return {"status": "idle", "state": None}
    if session.state is SessionState.FAILED:
        status = "degraded"
    else:
        status = "healthy"
    return {"status": status, "state": session.state.value}


# ============================================================
# REST API: セッション管理
# ============================================================


class CreateSessionRequest(BaseModel):
    """セッション作成リクエスト."""

    url: str
    publish_url: str
    width: int = 1920
    height: int = 1080
    output_width: int | None = None
    output_height: int | None = None
    framerate: int = 30
    lightweight: bool = False
    click_selector: str | None = None
    click_x: int | None = None
    click_y: int | None = None
    click_delay: int = 1000  # ms
    audio_device: str | None = None
    video_device: str | None = None


@app.post("/api/session", status_code=201)
async def create_session(req: CreateSessionRequest) -> dict:
    """セッション開始 (セットアップはバックグラウンドで進む)."""
    try:
        config = SessionConfig.build(
            url=req.url,
            publish_url=req.publish_url,
            width=req.width,
            height=req.height,
            output_width=req.output_width,
            output_height=req.output_height,
            framerate=req.framerate,
            tier=QualityTier.LIGHTWEIGHT if req.lightweight else QualityTier.STANDARD,
            click_selector=req.click_selector,
            click_x=req.click_x,
            click_y=req.click_y,
            click_delay=req.click_delay / 1000,
            audio_device=req.audio_device,
            video_device=req.video_device,
        )
    except ValueError as e:
        return JSONResponse(status_code=422, content={"error": str(e)})

    try:
        session = runner.launch(config)
    except ValueError as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    return session.info()


@app.get("/api/session")
async def get_session() -> dict:
    """セッション情報取得."""
    if runner.session is None:
        return JSONResponse(status_code=404, content={"error": "Session not found"})
    return runner.session.info()


@app.delete("/api/session")
async def delete_session() -> dict:
    """セッション停止."""
    if runner.session is None:
        return JSONResponse(status_code=404, content={"error": "Session not found"})
    await runner.stop()
    return runner.session.info()
