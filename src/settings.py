"""Runtime configuration for runlogbot.

Everything comes from the environment (a local .env is loaded first). LINE and
Typhoon credentials are required; the bot refuses to start without them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from typhoon_client import DEFAULT_BASE_URL, DEFAULT_CHAT_MODEL, DEFAULT_OCR_MODEL


HERE = Path(__file__).resolve().parent
PROJECT_ROOT = HERE.parent

REQUIRED_VARS = (
    "LINE_CHANNEL_ACCESS_TOKEN",
    "LINE_CHANNEL_SECRET",
    "TYPHOON_API_KEY",
)


class MissingConfigError(RuntimeError):
    def __init__(self, missing: list[str]):
        super().__init__("Missing required env vars: " + ", ".join(missing))
        self.missing = missing


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int((env.get(name) or str(default)).strip())
    except ValueError:
        return default


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float((env.get(name) or str(default)).strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    line_channel_access_token: str
    line_channel_secret: str
    typhoon_api_key: str
    port: int = 3000
    public_base_url: str = "http://localhost:3000"
    db_path: Path = PROJECT_ROOT / "runlog.db"
    images_dir: Path = PROJECT_ROOT / "run-images"
    log_path: Path = PROJECT_ROOT / "bot.log"
    typhoon_base_url: str = DEFAULT_BASE_URL
    typhoon_chat_model: str = DEFAULT_CHAT_MODEL
    typhoon_ocr_model: str = DEFAULT_OCR_MODEL
    http_timeout_s: float = 60.0
    # Upper bound for any single awaited step of one event.
    stage_timeout_s: float = 120.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_dotenv()
            env = os.environ

        missing = [name for name in REQUIRED_VARS if not (env.get(name) or "").strip()]
        if missing:
            raise MissingConfigError(missing)

        port = _int(env, "PORT", 3000)
        return cls(
            line_channel_access_token=env["LINE_CHANNEL_ACCESS_TOKEN"].strip(),
            line_channel_secret=env["LINE_CHANNEL_SECRET"].strip(),
            typhoon_api_key=env["TYPHOON_API_KEY"].strip(),
            port=port,
            public_base_url=(env.get("PUBLIC_BASE_URL") or f"http://localhost:{port}").rstrip("/"),
            db_path=Path(env.get("RUNLOG_DB_PATH") or PROJECT_ROOT / "runlog.db"),
            images_dir=Path(env.get("RUNLOG_IMAGES_DIR") or PROJECT_ROOT / "run-images"),
            log_path=Path(env.get("RUNLOG_LOG_PATH") or PROJECT_ROOT / "bot.log"),
            typhoon_base_url=env.get("TYPHOON_BASE_URL") or DEFAULT_BASE_URL,
            typhoon_chat_model=env.get("TYPHOON_CHAT_MODEL") or DEFAULT_CHAT_MODEL,
            typhoon_ocr_model=env.get("TYPHOON_OCR_MODEL") or DEFAULT_OCR_MODEL,
            http_timeout_s=_float(env, "HTTP_TIMEOUT_S", 60.0),
            stage_timeout_s=_float(env, "STAGE_TIMEOUT_S", 120.0),
        )
