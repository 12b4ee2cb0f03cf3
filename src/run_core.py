"""Core logic for runlogbot.

This module is intentionally free of LINE/Typhoon/storage so it can be unit-tested.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Optional


# Running distances outside this window are treated as misreads.
MIN_DISTANCE_KM = 0.1
MAX_DISTANCE_KM = 100.0

DEFAULT_DISPLAY_NAME = "Runner"


PROCESSING_TEXT = "⏳ กำลังประมวลผลภาพ กรุณารอสักครู่..."

TEXT_INSTRUCTION_TEXT = (
    "🏃 กรุณาส่ง 'รูปภาพ' ผลการวิ่งเพื่อบันทึกระยะทางครับ\n"
    "(ไม่สามารถบันทึกจากการพิมพ์ข้อความได้)"
)

FAILURE_TEXT = "❌ ระบบไม่สามารถอ่านระยะทางได้\nกรุณาส่งรูปใหม่ครับ"

GENERIC_ERROR_TEXT = "เกิดข้อผิดพลาดในการประมวลผลครับ"


# Lenient leading-number match: "4.27", " 5 km", ".5", "+3.0".
_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+))")


def parse_distance(reply: Optional[str]) -> float:
    """Parse the model reply into km.

    Anything that does not start with a number (or is not positive) is 0.0.
    """

    if not reply:
        return 0.0
    m = _LEADING_NUMBER.match(reply)
    if not m:
        return 0.0
    try:
        value = float(m.group(1))
    except ValueError:
        return 0.0
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return 0.0
    return value


def is_plausible_distance(km: float) -> bool:
    return MIN_DISTANCE_KM <= km <= MAX_DISTANCE_KM


def clamp_distance(km: float) -> float:
    """Return km if it is a believable running distance, else 0.0."""
    return km if is_plausible_distance(km) else 0.0


def format_km(km: float) -> str:
    # 5.0 -> "5", 4.27 -> "4.27"
    return f"{km:.2f}".rstrip("0").rstrip(".")


def success_text(distance_km: float) -> str:
    return f"🤖 ตรวจพบระยะทาง {format_km(distance_km)} km\n✅ บันทึกเรียบร้อยครับ!"


def image_object_name(line_user_id: str, message_id: str, now: datetime) -> str:
    """Storage path for an uploaded run photo.

    Keyed by user and upload time; the message id keeps two photos sent within
    the same millisecond apart.
    """

    safe_user = re.sub(r"[^A-Za-z0-9_-]", "_", line_user_id) or "unknown"
    safe_msg = re.sub(r"[^A-Za-z0-9_-]", "_", message_id or "") or "image"
    epoch_ms = int(now.timestamp() * 1000)
    return f"{safe_user}/{epoch_ms}-{safe_msg}.jpg"
