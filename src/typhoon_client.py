from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
import openai


logger = logging.getLogger("runlogbot.typhoon")

DEFAULT_BASE_URL = "https://api.opentyphoon.ai/v1"
DEFAULT_OCR_MODEL = "typhoon-ocr"
DEFAULT_CHAT_MODEL = "typhoon-v2.5-30b-a3b-instruct"

# Decoding parameters the OCR model is tuned for.
OCR_PARAMS: Dict[str, str] = {
    "task_type": "default",
    "max_tokens": "1000",
    "temperature": "0.1",
    "top_p": "0.6",
    "repetition_penalty": "1.2",
}

_BODY_LOG_CHARS = 500


class TyphoonError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OcrServiceError(TyphoonError):
    pass


class ChatServiceError(TyphoonError):
    pass


class RateLimited(TyphoonError):
    """Upstream answered 429. Kept apart from ChatServiceError so callers can back off."""


class OcrClient(Protocol):
    async def ocr(self, image: bytes, filename: str) -> str:
        """Return the recognized text of the image."""


class ChatClient(Protocol):
    async def chat(self, messages: List[Dict[str, str]], *, max_tokens: int, temperature: float) -> str:
        """Return the assistant reply text."""


def extract_page_texts(payload: Any) -> List[str]:
    """Pull the text of every successful page out of an OCR response.

    A page's content may itself be JSON carrying a natural_text field; that
    wins over the raw content. Anything else is used verbatim.
    """

    texts: List[str] = []
    results = payload.get("results") if isinstance(payload, dict) else None
    for page in results or []:
        if not isinstance(page, dict) or not page.get("success") or not page.get("message"):
            continue
        try:
            content = page["message"]["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("ocr_page_malformed keys=%s", sorted(page.keys()))
            continue
        if content is None:
            continue
        content = str(content)
        try:
            parsed = json.loads(content)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("natural_text"):
            content = str(parsed["natural_text"])
        texts.append(content)
    return texts


@dataclass
class TyphoonOcrClient:
    """Live OCR client (multipart POST /ocr)."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_OCR_MODEL
    timeout_s: float = 60.0
    http: Optional[httpx.AsyncClient] = None
    _owns_http: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s))
            self._owns_http = True

    async def ocr(self, image: bytes, filename: str = "image.png") -> str:
        url = f"{self.base_url.rstrip('/')}/ocr"
        files = {"file": (filename, image, _mime_for(filename))}
        data = {"model": self.model, **OCR_PARAMS}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            resp = await self.http.post(url, files=files, data=data, headers=headers)
        except httpx.HTTPError as e:
            raise OcrServiceError(f"Typhoon OCR request failed: {e!r}") from e

        if resp.status_code >= 400:
            body = resp.text
            logger.warning("ocr_http_error status=%s body=%s", resp.status_code, body[:_BODY_LOG_CHARS])
            raise OcrServiceError(
                f"Typhoon OCR API error: {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise OcrServiceError(
                "Typhoon OCR returned non-JSON body", status_code=resp.status_code, body=resp.text
            ) from e

        texts = extract_page_texts(payload)
        logger.info("ocr_ok pages=%s chars=%s", len(texts), sum(len(t) for t in texts))
        return "\n".join(texts)

    async def list_models(self) -> List[str]:
        url = f"{self.base_url.rstrip('/')}/models"
        try:
            resp = await self.http.get(url, headers={"Authorization": f"Bearer {self.api_key}"})
        except httpx.HTTPError as e:
            raise TyphoonError(f"Typhoon models request failed: {e!r}") from e

        if resp.status_code >= 400:
            raise TyphoonError(
                f"Typhoon models API error: {resp.status_code}", status_code=resp.status_code, body=resp.text
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise TyphoonError(
                "Typhoon models returned non-JSON body", status_code=resp.status_code, body=resp.text
            ) from e
        data = payload.get("data", []) if isinstance(payload, dict) else []
        return [m.get("id") for m in data if isinstance(m, dict)]

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()


@dataclass
class TyphoonChatClient:
    """Live chat client. Typhoon speaks the OpenAI chat-completions protocol."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_CHAT_MODEL
    timeout_s: float = 60.0
    client: Optional[openai.AsyncOpenAI] = None

    def __post_init__(self) -> None:
        if self.client is None:
            # No automatic retries: a failed extraction just asks the user to resend.
            self.client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )

    async def chat(self, messages: List[Dict[str, str]], *, max_tokens: int, temperature: float) -> str:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.RateLimitError as e:
            logger.warning("chat_rate_limited status=%s", e.status_code)
            raise RateLimited("Typhoon chat rate limit reached", status_code=e.status_code, body=_err_body(e)) from e
        except openai.APIStatusError as e:
            body = _err_body(e)
            logger.warning("chat_http_error status=%s body=%s", e.status_code, body[:_BODY_LOG_CHARS])
            raise ChatServiceError(
                f"Typhoon chat API error: {e.status_code}", status_code=e.status_code, body=body
            ) from e
        except openai.APIConnectionError as e:
            raise ChatServiceError(f"Typhoon chat request failed: {e!r}") from e

        if not resp.choices:
            return ""
        return (resp.choices[0].message.content or "").strip()

    async def aclose(self) -> None:
        await self.client.close()


def _err_body(e: openai.APIStatusError) -> str:
    try:
        return e.response.text
    except httpx.ResponseNotRead:
        return str(e.body or "")


def _mime_for(filename: str) -> str:
    lowered = filename.lower()
    if lowered.endswith(".png"):
        return "image/png"
    return "image/jpeg"
