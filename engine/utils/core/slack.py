from typing import Optional
from dataclasses import dataclass

from slack_sdk import WebClient

from utils.vault import secrets

_ENVIRONMENTS = {
    "https://dev.bidlevel.app": "Dev",
    "https://staging.bidlevel.app": "Stage",
    "https://app.bidlevel.app": "Prod",
}

_ENV = _ENVIRONMENTS.get(secrets.get("CLIENT_API_URL", default="") or "", "Unknown")
_CHANNEL_ID = secrets.get("channel_id", default="") or ""
_TOKEN = secrets.get("slack_token", default="") or ""
_client: Optional[WebClient] = None


def _get_client() -> WebClient:
    global _client
    if _client is None:
        _client = WebClient(token=_TOKEN)
    return _client


@dataclass
class SlackActivityMeta:
    job_id: str
    tool: str
    user: str
    environment: str = _ENV
    company: Optional[str] = None
    division: Optional[str] = None


def fmt_dur(sec: float) -> str:
    if sec is None:
        return "0s"
    return f"{int(round(float(sec)))}s"


class SlackActivityLogger:
    """
    Structured Slack activity logger:
      - start(): parent message (first line)
      - sub():   stage line(s) in thread
      - done():  final DONE
      - error(): final ERROR with details
    """

    def __init__(
        self,
        meta: SlackActivityMeta,
        channel_id: Optional[str] = None,
        thread_ts: Optional[str] = None,
    ):
        if not _TOKEN or not (_CHANNEL_ID or channel_id):
            raise EnvironmentError("Missing SLACK_TOKEN or CHANNEL_ID")
        self.meta = meta
        self.channel_id = channel_id or _CHANNEL_ID
        self.thread_ts = thread_ts

    @property
    def header_text(self) -> str:
        company = self.meta.company or "-"
        division = self.meta.division or "-"
        return (
            f"ENV={self.meta.environment} | USER={self.meta.user} | TOOL={self.meta.tool} "
            f"| JOB={self.meta.job_id} | DIVISION={division} | COMPANY={company}"
        )

    def start(self) -> str:
        resp = _get_client().chat_postMessage(channel=self.channel_id, text=self.header_text)
        self.thread_ts = resp["ts"]
        return self.thread_ts

    def sub(self, text: str) -> None:
        if not self.thread_ts:
            self.start()
        _get_client().chat_postMessage(
            channel=self.channel_id, text=text, thread_ts=self.thread_ts
        )

    def done(self) -> None:
        if not self.thread_ts:
            self.start()
        _get_client().chat_postMessage(
            channel=self.channel_id, text="DONE", thread_ts=self.thread_ts
        )

    def error(self, error_text: str) -> None:
        if not self.thread_ts:
            self.start()
        _get_client().chat_postMessage(
            channel=self.channel_id,
            text=f"ERROR: {error_text}",
            thread_ts=self.thread_ts,
        )
