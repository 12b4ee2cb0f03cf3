from datetime import datetime, timezone

from run_core import (
    clamp_distance,
    format_km,
    image_object_name,
    is_plausible_distance,
    parse_distance,
    success_text,
)


def test_parse_distance_plain_number():
    assert parse_distance("4.27") == 4.27


def test_parse_distance_garbage_is_zero():
    assert parse_distance("garbage") == 0.0


def test_parse_distance_empty_is_zero():
    assert parse_distance("") == 0.0
    assert parse_distance(None) == 0.0
    assert parse_distance("   ") == 0.0


def test_parse_distance_takes_leading_number():
    # Models sometimes tack on the unit despite being told not to.
    assert parse_distance(" 5 km") == 5.0
    assert parse_distance("10.5\n") == 10.5
    assert parse_distance(".5") == 0.5


def test_parse_distance_rejects_non_positive_and_words():
    assert parse_distance("-3") == 0.0
    assert parse_distance("0") == 0.0
    assert parse_distance("nan") == 0.0
    assert parse_distance("distance: 5") == 0.0


def test_plausible_range_bounds():
    assert is_plausible_distance(0.1)
    assert is_plausible_distance(100.0)
    assert not is_plausible_distance(0.05)
    assert not is_plausible_distance(427)


def test_clamp_distance_drops_implausible_values():
    assert clamp_distance(4.27) == 4.27
    assert clamp_distance(427.0) == 0.0
    assert clamp_distance(0.0) == 0.0


def test_format_km_trims_trailing_zeros():
    assert format_km(5.0) == "5"
    assert format_km(4.27) == "4.27"
    assert format_km(10.5) == "10.5"


def test_success_text_mentions_distance():
    msg = success_text(4.27)
    assert "4.27 km" in msg
    assert "✅" in msg


def test_image_object_name_is_per_user_and_timestamped():
    now = datetime(2026, 3, 1, 6, 30, 0, tzinfo=timezone.utc)
    name = image_object_name("U1234abcd", "5551212", now)
    assert name == f"U1234abcd/{int(now.timestamp() * 1000)}-5551212.jpg"


def test_image_object_name_cannot_escape_user_dir():
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    name = image_object_name("../../etc", "../x", now)
    assert ".." not in name
    assert name.count("/") == 1
