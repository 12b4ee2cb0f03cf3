#!/usr/bin/env python3
"""Extract the running distance (km) from a run-result photo.

Pipeline: binarize photo -> Typhoon OCR -> Typhoon chat model reads the km.

The model gets a deliberately narrow contract: reply with ONLY the number.
Anything it says that doesn't parse as a plausible distance counts as
"no distance found", never as an error.

Auth:
  export TYPHOON_API_KEY=...

Usage (local debugging, no LINE involved):
  python3 src/extractor.py --image ~/Downloads/run.jpg
  python3 src/extractor.py --image run.jpg --save-normalized out/run.ocr.png
  python3 src/extractor.py --list-models
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

from image_prep import ImageDecodeError, normalize_for_ocr
from run_core import clamp_distance, parse_distance
from typhoon_client import (
    DEFAULT_BASE_URL,
    DEFAULT_CHAT_MODEL,
    DEFAULT_OCR_MODEL,
    ChatClient,
    TyphoonChatClient,
    TyphoonError,
    TyphoonOcrClient,
)


DISTANCE_PROMPT = """You are a running data extractor.
Analyze the OCR text. The user just ran a race.
Look for the DISTANCE in KM.
IMPORTANT:
- If you see a large number like '427' or '512' without a decimal, but it's clearly the distance, assume the decimal is missing (e.g., 427 becomes 4.27).
- Running distance is usually between 0.1 and 100.0 km.
- Return ONLY the number."""

CHAT_TEMPERATURE = 0.1
# A bare number needs only a handful of tokens.
CHAT_MAX_TOKENS = 32


def build_distance_messages(raw_text: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": DISTANCE_PROMPT},
        {"role": "user", "content": f"OCR Text: {raw_text}"},
    ]


async def extract_distance(chat: ChatClient, raw_text: str) -> float:
    """Ask the chat model for the distance in raw_text.

    Returns 0.0 when the reply isn't a number in the plausible range.
    RateLimited / ChatServiceError propagate.
    """

    reply = await chat.chat(
        build_distance_messages(raw_text),
        max_tokens=CHAT_MAX_TOKENS,
        temperature=CHAT_TEMPERATURE,
    )
    return clamp_distance(parse_distance(reply))


async def _run_image(args: argparse.Namespace, api_key: str) -> int:
    image_path = Path(args.image).expanduser().resolve()
    if not image_path.exists():
        print(f"Image not found: {image_path}", file=sys.stderr)
        return 2

    try:
        normalized = normalize_for_ocr(image_path.read_bytes())
    except ImageDecodeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.save_normalized:
        out = Path(args.save_normalized).expanduser().resolve()
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(normalized)
        print(f"Wrote: {out}", file=sys.stderr)

    ocr = TyphoonOcrClient(api_key=api_key, base_url=args.base_url, model=args.ocr_model)
    chat = TyphoonChatClient(api_key=api_key, base_url=args.base_url, model=args.chat_model)
    try:
        raw_text = await ocr.ocr(normalized, f"{image_path.stem}.png")
        distance = await extract_distance(chat, raw_text) if raw_text.strip() else 0.0
    except TyphoonError as e:
        print(f"ERROR: {e} (status={e.status_code})", file=sys.stderr)
        return 1
    finally:
        await ocr.aclose()
        await chat.aclose()

    print(json.dumps({"raw_text": raw_text, "distance_km": distance}, ensure_ascii=False, indent=2))
    return 0


async def _run_list_models(args: argparse.Namespace, api_key: str) -> int:
    ocr = TyphoonOcrClient(api_key=api_key, base_url=args.base_url)
    try:
        models = await ocr.list_models()
    except TyphoonError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        await ocr.aclose()
    for m in models:
        print(m)
    return 0


def main(argv: List[str] | None = None) -> int:
    load_dotenv()

    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("--image", help="Path to a run-result photo (jpeg/png)")
    ap.add_argument("--save-normalized", default=None, help="Also write the binarized OCR input here")
    ap.add_argument("--list-models", action="store_true", help="Print model ids available to this API key")
    ap.add_argument("--base-url", default=os.getenv("TYPHOON_BASE_URL", DEFAULT_BASE_URL))
    ap.add_argument("--ocr-model", default=os.getenv("TYPHOON_OCR_MODEL", DEFAULT_OCR_MODEL))
    ap.add_argument("--chat-model", default=os.getenv("TYPHOON_CHAT_MODEL", DEFAULT_CHAT_MODEL))
    args = ap.parse_args(argv)

    api_key = os.getenv("TYPHOON_API_KEY")
    if not api_key:
        print("Missing TYPHOON_API_KEY env var", file=sys.stderr)
        return 2

    if args.list_models:
        return asyncio.run(_run_list_models(args, api_key))
    if not args.image:
        ap.error("--image is required unless --list-models is given")
    return asyncio.run(_run_image(args, api_key))


if __name__ == "__main__":
    raise SystemExit(main())
