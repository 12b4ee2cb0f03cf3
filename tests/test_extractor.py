from __future__ import annotations

import asyncio

import httpx
import pytest

import extractor
from extractor import CHAT_MAX_TOKENS, CHAT_TEMPERATURE, DISTANCE_PROMPT, build_distance_messages, extract_distance
from fakes import FakeChat
from typhoon_client import RateLimited, TyphoonOcrClient


def test_distance_messages_are_system_prompt_then_ocr_text():
    messages = build_distance_messages("TOTAL 427 PACE 6:12")
    assert messages[0] == {"role": "system", "content": DISTANCE_PROMPT}
    assert messages[1]["role"] == "user"
    assert messages[1]["content"] == "OCR Text: TOTAL 427 PACE 6:12"


def test_prompt_spells_out_the_contract():
    lowered = DISTANCE_PROMPT.lower()
    assert "only the number" in lowered
    assert "427 becomes 4.27" in DISTANCE_PROMPT
    assert "0.1 and 100.0" in DISTANCE_PROMPT


@pytest.mark.parametrize(
    "reply, expected",
    [
        ("4.27", 4.27),
        ("garbage", 0.0),
        ("", 0.0),
        ("21.1 km", 21.1),
        # Model ignored the implied-decimal rule; refuse rather than store 427 km.
        ("427", 0.0),
    ],
)
def test_extract_distance_parses_model_reply(reply, expected):
    chat = FakeChat(reply=reply)
    assert asyncio.run(extract_distance(chat, "427")) == expected


def test_extract_distance_uses_low_temperature_small_budget():
    chat = FakeChat(reply="5")
    asyncio.run(extract_distance(chat, "5 km"))
    call = chat.calls[0]
    assert call["temperature"] == CHAT_TEMPERATURE == 0.1
    assert call["max_tokens"] == CHAT_MAX_TOKENS
    assert CHAT_MAX_TOKENS <= 64


def test_extract_distance_propagates_rate_limit():
    chat = FakeChat(error=RateLimited("429", status_code=429))
    with pytest.raises(RateLimited):
        asyncio.run(extract_distance(chat, "5 km"))


def test_cli_requires_api_key(monkeypatch, capsys):
    monkeypatch.setattr(extractor, "load_dotenv", lambda: None)
    monkeypatch.delenv("TYPHOON_API_KEY", raising=False)
    assert extractor.main(["--image", "run.jpg"]) == 2
    assert "TYPHOON_API_KEY" in capsys.readouterr().err


def test_cli_missing_image(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(extractor, "load_dotenv", lambda: None)
    monkeypatch.setenv("TYPHOON_API_KEY", "k")
    assert extractor.main(["--image", str(tmp_path / "nope.jpg")]) == 2
    assert "Image not found" in capsys.readouterr().err


def test_cli_bad_image(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(extractor, "load_dotenv", lambda: None)
    monkeypatch.setenv("TYPHOON_API_KEY", "k")
    bad = tmp_path / "bad.jpg"
    bad.write_bytes(b"not a jpeg")
    assert extractor.main(["--image", str(bad)]) == 2
    assert "decodable" in capsys.readouterr().err


def test_cli_list_models_unreachable_exits_1(monkeypatch, capsys):
    monkeypatch.setattr(extractor, "load_dotenv", lambda: None)
    monkeypatch.setenv("TYPHOON_API_KEY", "k")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def offline_client(**kwargs):
        http = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
        return TyphoonOcrClient(http=http, **kwargs)

    monkeypatch.setattr(extractor, "TyphoonOcrClient", offline_client)
    assert extractor.main(["--list-models"]) == 1
    assert "ERROR" in capsys.readouterr().err
