"""セッションのエラー分類.

SetupFailure / TerminalFailure のみがセッションを終了させる。
それ以外はログ出力・リトライ・スキップで局所的に回復する。
"""


class StreamError(RuntimeError):
    """web-page-stream の基底例外.

    Attributes:
        diagnostics: 外部プロセスの診断出力 (stderr の末尾など)
    """

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class SetupFailure(StreamError):
    """Xvfb / オーディオデーモン / ブラウザがタイムアウト内に準備完了しなかった."""


class TriggerFailure(StreamError):
    """インタラクション対象の要素が見つからない、またはクリックできなかった."""


class RoutingConvergenceTimeout(StreamError):
    """Publisher 起動前にオーディオルーティングを確認できなかった."""


class PublishFailure(StreamError):
    """FFmpeg が非ゼロで終了した (1 回目は無音フォールバックで再試行)."""

    def __init__(self, message: str, returncode: int | None, diagnostics: str = ""):
        super().__init__(message, diagnostics)
        self.returncode = returncode


class TerminalFailure(StreamError):
    """リトライ後も配信プロセスが失敗した (回復不能)."""
