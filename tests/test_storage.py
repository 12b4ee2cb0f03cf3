from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from storage import SqliteStore


def _store(tmp_path) -> SqliteStore:
    return SqliteStore(tmp_path / "runlog.db", tmp_path / "images", "https://runs.example/")


def _count(store: SqliteStore, table: str) -> int:
    con = sqlite3.connect(store.db_path)
    try:
        return con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        con.close()


def test_upsert_profile_is_idempotent_and_keeps_first_name(tmp_path):
    store = _store(tmp_path)
    first = store.upsert_profile("U1", "Alice")
    again = store.upsert_profile("U1", "Someone Else")
    assert again == first
    assert again.display_name == "Alice"
    assert store.get_profile("U1") == first
    assert _count(store, "profiles") == 1


def test_get_profile_miss(tmp_path):
    assert _store(tmp_path).get_profile("nobody") is None


def test_concurrent_upserts_create_one_profile(tmp_path):
    store = _store(tmp_path)
    with ThreadPoolExecutor(max_workers=8) as pool:
        profiles = list(pool.map(lambda i: store.upsert_profile("Unew", f"name-{i}"), range(16)))
    assert len({p.id for p in profiles}) == 1
    assert _count(store, "profiles") == 1


def test_line_user_id_is_unique_at_schema_level(tmp_path):
    store = _store(tmp_path)
    store.upsert_profile("U1", "Alice")
    con = sqlite3.connect(store.db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            con.execute(
                "INSERT INTO profiles (id, line_user_id, display_name, created_at) VALUES ('x', 'U1', 'B', 'now')"
            )
    finally:
        con.close()


def test_insert_run_and_read_back(tmp_path):
    store = _store(tmp_path)
    p = store.upsert_profile("U1", "Alice")
    run = store.insert_run(p.id, "m1", "https://runs.example/images/a.jpg", 5.0, "5.00 km")
    assert run.distance_km == 5.0
    assert store.runs_for(p.id) == [run]


def test_negative_distance_rejected_by_schema(tmp_path):
    store = _store(tmp_path)
    p = store.upsert_profile("U1", "Alice")
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_run(p.id, "m1", "u", -1.0, "")


def test_upload_image_and_public_url(tmp_path):
    store = _store(tmp_path)
    name = store.upload_image("U1/1700000000000-42.jpg", b"jpegbytes")
    assert (tmp_path / "images" / "U1" / "1700000000000-42.jpg").read_bytes() == b"jpegbytes"
    assert store.public_url(name) == "https://runs.example/images/U1/1700000000000-42.jpg"


def test_upload_image_rejects_path_escape(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.upload_image("../outside.jpg", b"x")


def test_ranking_sums_runs_per_profile(tmp_path):
    store = _store(tmp_path)
    a = store.upsert_profile("Ua", "Alice")
    b = store.upsert_profile("Ub", "Bob")
    store.upsert_profile("Uc", "No Runs Yet")
    store.insert_run(a.id, "m1", "u", 5.0, "")
    store.insert_run(b.id, "m2", "u", 10.0, "")
    store.insert_run(a.id, "m3", "u", 3.25, "")

    ranking = store.ranking()
    assert [r["display_name"] for r in ranking] == ["Bob", "Alice"]
    assert ranking[1]["total_km"] == 8.25
    assert ranking[1]["runs"] == 2
    assert ranking[0]["rank"] == 1
    assert store.ranking(limit=1)[0]["display_name"] == "Bob"


def test_insert_run_is_keyed_on_profile_and_message(tmp_path):
    store = _store(tmp_path)
    a = store.upsert_profile("Ua", "Alice")
    b = store.upsert_profile("Ub", "Bob")
    first = store.insert_run(a.id, "m1", "https://runs.example/images/first.jpg", 5.0, "5 km")
    again = store.insert_run(a.id, "m1", "https://runs.example/images/second.jpg", 6.0, "6 km")
    other_user = store.insert_run(b.id, "m1", "u", 2.0, "")

    assert again == first
    assert store.find_run(a.id, "m1") == first
    assert store.find_run(a.id, "m2") is None
    assert other_user.id != first.id
    assert _count(store, "runs") == 2
