"""Per-event processing for runlogbot.

One LINE event in, one definitive message out. For an image that means:

  processing reply -> profile -> download -> binarize -> OCR -> distance
  -> (distance > 0) store photo + run, push success
  -> (otherwise)    push "please resend"

OCR/model trouble only ever downgrades the result to "no distance"; anything
else that goes wrong ends in a generic error push. handle_event never raises.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from extractor import extract_distance
from image_prep import ImageDecodeError, normalize_for_ocr
from run_core import (
    DEFAULT_DISPLAY_NAME,
    FAILURE_TEXT,
    GENERIC_ERROR_TEXT,
    PROCESSING_TEXT,
    TEXT_INSTRUCTION_TEXT,
    image_object_name,
    success_text,
)
from storage import Profile, RunRecord
from typhoon_client import ChatClient, ChatServiceError, OcrClient, OcrServiceError, RateLimited


logger = logging.getLogger("runlogbot.pipeline")


@dataclass(frozen=True)
class InboundEvent:
    type: str
    message_type: Optional[str]
    user_id: Optional[str]
    reply_token: Optional[str]
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    raw_text: str
    distance_km: float
    success: bool


class Messenger(Protocol):
    async def reply_text(self, reply_token: str, text: str) -> None: ...

    async def push_text(self, user_id: str, text: str) -> None: ...

    async def get_display_name(self, user_id: str) -> Optional[str]: ...

    async def get_message_content(self, message_id: str) -> bytes: ...


class Store(Protocol):
    async def get_profile(self, line_user_id: str) -> Optional[Profile]: ...

    async def upsert_profile(self, line_user_id: str, display_name: str) -> Profile: ...

    async def find_run(self, profile_id: str, message_id: str) -> Optional[RunRecord]: ...

    async def insert_run(
        self, profile_id: str, message_id: str, image_url: str, distance_km: float, raw_ocr_text: str
    ) -> RunRecord: ...

    async def upload_image(self, object_name: str, data: bytes) -> str: ...

    async def public_url(self, object_name: str) -> str: ...


async def _bounded(aw: Awaitable[Any], timeout_s: Optional[float]) -> Any:
    if timeout_s is None:
        return await aw
    return await asyncio.wait_for(aw, timeout_s)


class ProfileResolver:
    def __init__(self, messenger: Messenger, store: Store, *, timeout_s: Optional[float] = None):
        self.messenger = messenger
        self.store = store
        self.timeout_s = timeout_s

    async def _display_name(self, line_user_id: str) -> str:
        try:
            name = await _bounded(self.messenger.get_display_name(line_user_id), self.timeout_s)
        except Exception as e:
            logger.info("display_name_unavailable user=%s error=%r", line_user_id, e)
            return DEFAULT_DISPLAY_NAME
        return (name or "").strip() or DEFAULT_DISPLAY_NAME

    async def resolve(self, line_user_id: str) -> Profile:
        profile = await _bounded(self.store.get_profile(line_user_id), self.timeout_s)
        if profile:
            return profile

        display_name = await self._display_name(line_user_id)
        # upsert re-reads the existing row if another delivery created it first.
        profile = await _bounded(self.store.upsert_profile(line_user_id, display_name), self.timeout_s)
        logger.info("profile_resolved user=%s profile_id=%s name=%s", line_user_id, profile.id, profile.display_name)
        return profile


class RunPipeline:
    def __init__(
        self,
        messenger: Messenger,
        store: Store,
        ocr: OcrClient,
        chat: ChatClient,
        *,
        stage_timeout_s: Optional[float] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.messenger = messenger
        self.store = store
        self.ocr = ocr
        self.chat = chat
        self.stage_timeout_s = stage_timeout_s
        self.now = now
        self.resolver = ProfileResolver(messenger, store, timeout_s=stage_timeout_s)

    async def _call(self, aw: Awaitable[Any]) -> Any:
        return await _bounded(aw, self.stage_timeout_s)

    async def handle_event(self, event: InboundEvent) -> None:
        if event.type != "message":
            logger.info("event_ignored type=%s", event.type)
            return
        if not event.user_id:
            logger.info("event_no_user message_type=%s", event.message_type)
            return

        try:
            if event.message_type == "text":
                await self._call(self.messenger.reply_text(event.reply_token, TEXT_INSTRUCTION_TEXT))
                logger.info("text_instruction_sent user=%s", event.user_id)
            elif event.message_type == "image":
                await self._handle_image(event)
            else:
                logger.info("message_ignored user=%s message_type=%s", event.user_id, event.message_type)
        except Exception:
            logger.exception(
                "handle_event_failed user=%s message_type=%s message_id=%s",
                event.user_id,
                event.message_type,
                event.message_id,
            )
            # The reply token may already be spent, so always push.
            await self._push_safely(event.user_id, GENERIC_ERROR_TEXT)

    async def _handle_image(self, event: InboundEvent) -> None:
        await self._reply_safely(event, PROCESSING_TEXT)

        profile = await self.resolver.resolve(event.user_id)
        original = await self._call(self.messenger.get_message_content(event.message_id))
        logger.info("image_received user=%s message_id=%s bytes=%s", event.user_id, event.message_id, len(original))

        result = await self.extract(original, filename=f"{event.user_id}.png")

        if result.distance_km > 0:
            run = await self._persist(profile, event, original, result)
            logger.info(
                "run_recorded run_id=%s profile_id=%s distance_km=%s url=%s",
                run.id,
                profile.id,
                run.distance_km,
                run.image_url,
            )
            # Run is already stored; a failed push is only logged.
            await self._push_safely(event.user_id, success_text(run.distance_km))
        else:
            logger.info("run_rejected user=%s message_id=%s ocr_chars=%s", event.user_id, event.message_id, len(result.raw_text))
            await self._push_safely(event.user_id, FAILURE_TEXT)

    async def extract(self, image: bytes, filename: str = "image.png") -> ExtractionResult:
        """Image bytes -> distance. Every OCR/model failure degrades to 0 km."""

        try:
            normalized = await asyncio.to_thread(normalize_for_ocr, image)
        except ImageDecodeError as e:
            logger.warning("image_decode_failed error=%s", e)
            return ExtractionResult(raw_text="", distance_km=0.0, success=False)

        try:
            raw_text = await self._call(self.ocr.ocr(normalized, filename))
        except OcrServiceError as e:
            logger.warning("ocr_failed status=%s error=%s", e.status_code, e)
            return ExtractionResult(raw_text="", distance_km=0.0, success=False)
        except asyncio.TimeoutError:
            logger.warning("ocr_timeout timeout_s=%s", self.stage_timeout_s)
            return ExtractionResult(raw_text="", distance_km=0.0, success=False)

        if not raw_text.strip():
            return ExtractionResult(raw_text=raw_text, distance_km=0.0, success=False)

        try:
            distance = await self._call(extract_distance(self.chat, raw_text))
        except RateLimited as e:
            logger.warning("extract_rate_limited status=%s", e.status_code)
            distance = 0.0
        except ChatServiceError as e:
            logger.warning("extract_failed status=%s error=%s", e.status_code, e)
            distance = 0.0
        except asyncio.TimeoutError:
            logger.warning("extract_timeout timeout_s=%s", self.stage_timeout_s)
            distance = 0.0

        return ExtractionResult(raw_text=raw_text, distance_km=distance, success=distance > 0)

    async def _persist(self, profile: Profile, event: InboundEvent, original: bytes, result: ExtractionResult) -> RunRecord:
        message_id = event.message_id or ""
        existing = await self._call(self.store.find_run(profile.id, message_id))
        if existing:
            logger.info("run_duplicate run_id=%s profile_id=%s message_id=%s", existing.id, profile.id, message_id)
            return existing

        object_name = image_object_name(event.user_id, message_id, self.now())
        await self._call(self.store.upload_image(object_name, original))
        image_url = await self._call(self.store.public_url(object_name))
        return await self._call(
            self.store.insert_run(profile.id, message_id, image_url, result.distance_km, result.raw_text)
        )

    async def _reply_safely(self, event: InboundEvent, text: str) -> None:
        try:
            await self._call(self.messenger.reply_text(event.reply_token, text))
        except Exception as e:
            logger.warning("reply_failed user=%s error=%r", event.user_id, e)

    async def _push_safely(self, user_id: str, text: str) -> None:
        try:
            await self._call(self.messenger.push_text(user_id, text))
        except Exception:
            logger.exception("push_failed user=%s", user_id)
