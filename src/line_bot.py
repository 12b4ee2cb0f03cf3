#!/usr/bin/env python3
"""LINE bot: receive run-result photos and record the distance.

- Runners send a photo (race result / running-app screen) to the LINE OA.
- The webhook answers LINE with 200 straight away; the photo is processed in
  the background (OCR + distance extraction, see pipeline.py).
- The bot replies "processing..." and later pushes the outcome.

Env:
  LINE_CHANNEL_ACCESS_TOKEN=...  (LINE Developers console, Messaging API)
  LINE_CHANNEL_SECRET=...
  TYPHOON_API_KEY=...            (OCR + chat model)
  PUBLIC_BASE_URL=...            (optional, where /images is reachable)

Run:
  python3 -m venv .venv && source .venv/bin/activate
  pip install -e .
  python3 src/line_bot.py
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
import os
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.staticfiles import StaticFiles
from linebot.v3 import WebhookParser
from linebot.v3.exceptions import InvalidSignatureError
from linebot.v3.messaging import (
    AsyncApiClient,
    AsyncMessagingApi,
    AsyncMessagingApiBlob,
    Configuration,
    PushMessageRequest,
    ReplyMessageRequest,
    TextMessage,
)
from linebot.v3.webhooks import ImageMessageContent, MessageEvent, TextMessageContent

from pipeline import InboundEvent, RunPipeline
from settings import MissingConfigError, Settings
from storage import AsyncStore, SqliteStore
from typhoon_client import TyphoonChatClient, TyphoonOcrClient


logger = logging.getLogger("runlogbot")


def configure_logging(log_path: Path) -> None:
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(fmt)
    logger.addHandler(handler)
    # Also log to stderr for the console
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)


class LineMessenger:
    """Messenger backed by the LINE Messaging API (async SDK clients)."""

    def __init__(self, channel_access_token: str):
        self._client = AsyncApiClient(Configuration(access_token=channel_access_token))
        self.api = AsyncMessagingApi(self._client)
        self.blob = AsyncMessagingApiBlob(self._client)

    async def reply_text(self, reply_token: str, text: str) -> None:
        await self.api.reply_message(
            ReplyMessageRequest(reply_token=reply_token, messages=[TextMessage(text=text)])
        )

    async def push_text(self, user_id: str, text: str) -> None:
        await self.api.push_message(PushMessageRequest(to=user_id, messages=[TextMessage(text=text)]))

    async def get_display_name(self, user_id: str) -> Optional[str]:
        profile = await self.api.get_profile(user_id)
        return profile.display_name

    async def get_message_content(self, message_id: str) -> bytes:
        return bytes(await self.blob.get_message_content(message_id))

    async def aclose(self) -> None:
        await self._client.close()


def to_inbound_event(event: Any) -> InboundEvent:
    source = getattr(event, "source", None)
    user_id = getattr(source, "user_id", None)
    reply_token = getattr(event, "reply_token", None)

    if not isinstance(event, MessageEvent):
        return InboundEvent(
            type=str(getattr(event, "type", None) or "unknown"),
            message_type=None,
            user_id=user_id,
            reply_token=reply_token,
        )

    msg = event.message
    if isinstance(msg, ImageMessageContent):
        message_type = "image"
    elif isinstance(msg, TextMessageContent):
        message_type = "text"
    else:
        message_type = getattr(msg, "type", None)

    return InboundEvent(
        type="message",
        message_type=message_type,
        user_id=user_id,
        reply_token=reply_token,
        message_id=getattr(msg, "id", None),
    )


class WebhookDispatcher:
    """Runs webhook batches in the background, detached from the HTTP response."""

    def __init__(self, pipeline: RunPipeline):
        self.pipeline = pipeline
        # Strong refs so pending tasks aren't garbage-collected mid-flight.
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, events: List[InboundEvent]) -> asyncio.Task:
        task = asyncio.create_task(self._run(events))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, events: List[InboundEvent]) -> None:
        results = await asyncio.gather(
            *(self.pipeline.handle_event(e) for e in events),
            return_exceptions=True,
        )
        for event, res in zip(events, results):
            if isinstance(res, BaseException):
                logger.error("event_crashed user=%s message_id=%s error=%r", event.user_id, event.message_id, res)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _build_pipeline(settings: Settings, store: AsyncStore) -> tuple[RunPipeline, list]:
    messenger = LineMessenger(settings.line_channel_access_token)
    ocr = TyphoonOcrClient(
        api_key=settings.typhoon_api_key,
        base_url=settings.typhoon_base_url,
        model=settings.typhoon_ocr_model,
        timeout_s=settings.http_timeout_s,
    )
    chat = TyphoonChatClient(
        api_key=settings.typhoon_api_key,
        base_url=settings.typhoon_base_url,
        model=settings.typhoon_chat_model,
        timeout_s=settings.http_timeout_s,
    )
    pipeline = RunPipeline(messenger, store, ocr, chat, stage_timeout_s=settings.stage_timeout_s)
    return pipeline, [messenger, ocr, chat]


def create_app(
    settings: Settings,
    *,
    pipeline: Optional[RunPipeline] = None,
    store: Optional[AsyncStore] = None,
    parser: Optional[WebhookParser] = None,
) -> FastAPI:
    """Build the webhook app.

    Live LINE/Typhoon clients are created on startup unless a pipeline is
    passed in (tests pass one built from fakes).
    """

    if store is None:
        store = AsyncStore(SqliteStore(settings.db_path, settings.images_dir, settings.public_base_url))
    if parser is None:
        parser = WebhookParser(settings.line_channel_secret)
    settings.images_dir.mkdir(parents=True, exist_ok=True)

    closers: list = []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.dispatcher is None:
            built, owned = _build_pipeline(settings, store)
            closers.extend(owned)
            app.state.dispatcher = WebhookDispatcher(built)
        logger.info("webhook_ready port=%s images=%s", settings.port, settings.images_dir)

        yield

        await app.state.dispatcher.drain()
        for c in closers:
            await c.aclose()
        logger.info("webhook_stopped")

    app = FastAPI(title="runlogbot", lifespan=lifespan)
    app.state.store = store
    app.state.parser = parser
    app.state.dispatcher = WebhookDispatcher(pipeline) if pipeline is not None else None

    @app.post("/webhook")
    @app.post("/api/webhook")
    async def webhook(request: Request, x_line_signature: Optional[str] = Header(default=None)):
        body = (await request.body()).decode("utf-8", errors="replace")
        try:
            raw_events: Iterable[Any] = app.state.parser.parse(body, x_line_signature or "")
        except InvalidSignatureError:
            logger.warning("webhook_bad_signature bytes=%s", len(body))
            raise HTTPException(status_code=400, detail="Invalid signature")
        except ValueError as e:
            logger.warning("webhook_bad_body error=%s", e)
            raise HTTPException(status_code=400, detail="Malformed webhook body")

        events = [to_inbound_event(e) for e in raw_events]
        logger.info("webhook_accepted events=%s", len(events))
        if events:
            app.state.dispatcher.dispatch(events)
        return {"status": "ok"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/ranking")
    async def ranking(limit: int = Query(50, ge=1, le=500)):
        return {"ranking": await app.state.store.ranking(limit)}

    app.mount("/images", StaticFiles(directory=str(settings.images_dir)), name="images")

    return app


def main() -> None:
    try:
        settings = Settings.from_env()
    except MissingConfigError as e:
        raise SystemExit(str(e))

    configure_logging(settings.log_path)
    logger.info(
        "service_started pid=%s cwd=%s db=%s images=%s",
        os.getpid(),
        os.getcwd(),
        settings.db_path,
        settings.images_dir,
    )

    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
