"""SQLite + local-disk storage for profiles, runs and run photos.

One connection per operation, like the rest of the bot. Profile uniqueness is
enforced by the schema (UNIQUE line_user_id) and an atomic upsert, so two
webhook deliveries racing for a new user still produce one profile. Runs are
keyed the same way on (profile, LINE message id), so a redelivered webhook
never counts a run twice.
"""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Profile:
    id: str
    line_user_id: str
    display_name: str


@dataclass(frozen=True)
class RunRecord:
    id: int
    user_id: str
    message_id: str
    image_url: str
    distance_km: float
    raw_ocr_text: str
    created_at: str


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
      id TEXT PRIMARY KEY,
      line_user_id TEXT NOT NULL UNIQUE,
      display_name TEXT,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      user_id TEXT NOT NULL REFERENCES profiles(id),
      message_id TEXT NOT NULL,
      image_url TEXT NOT NULL,
      distance_km REAL NOT NULL CHECK (distance_km >= 0),
      raw_ocr_text TEXT,
      created_at TEXT NOT NULL,
      UNIQUE (user_id, message_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_user_id ON runs(user_id)",
]


_RUN_COLUMNS = "id, user_id, message_id, image_url, distance_km, raw_ocr_text, created_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SqliteStore:
    def __init__(self, db_path: Path, images_dir: Path, public_base_url: str):
        self.db_path = Path(db_path)
        self.images_dir = Path(images_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.images_dir.mkdir(parents=True, exist_ok=True)

        con = self._db()
        try:
            for stmt in SCHEMA:
                con.execute(stmt)
            con.commit()
        finally:
            con.close()

    def _db(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10)
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def get_profile(self, line_user_id: str) -> Optional[Profile]:
        con = self._db()
        try:
            row = con.execute(
                "SELECT id, line_user_id, display_name FROM profiles WHERE line_user_id = ?",
                (line_user_id,),
            ).fetchone()
        finally:
            con.close()
        if not row:
            return None
        return Profile(id=row[0], line_user_id=row[1], display_name=row[2] or "")

    def upsert_profile(self, line_user_id: str, display_name: str) -> Profile:
        """Create the profile unless it already exists; return the stored row.

        An existing profile keeps its original id and display name.
        """

        con = self._db()
        try:
            con.execute(
                """
                INSERT INTO profiles (id, line_user_id, display_name, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(line_user_id) DO NOTHING
                """,
                (str(uuid.uuid4()), line_user_id, display_name, _now()),
            )
            con.commit()
            row = con.execute(
                "SELECT id, line_user_id, display_name FROM profiles WHERE line_user_id = ?",
                (line_user_id,),
            ).fetchone()
        finally:
            con.close()
        if not row:
            raise RuntimeError(f"Failed to create profile for {line_user_id}")
        return Profile(id=row[0], line_user_id=row[1], display_name=row[2] or "")

    def find_run(self, profile_id: str, message_id: str) -> Optional[RunRecord]:
        con = self._db()
        try:
            row = con.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE user_id = ? AND message_id = ?",
                (profile_id, message_id),
            ).fetchone()
        finally:
            con.close()
        return RunRecord(*row) if row else None

    def insert_run(
        self, profile_id: str, message_id: str, image_url: str, distance_km: float, raw_ocr_text: str
    ) -> RunRecord:
        """Record the run for one LINE message; return the stored row.

        A second insert for the same (profile, message) keeps the first run.
        """

        con = self._db()
        try:
            con.execute(
                """
                INSERT INTO runs (user_id, message_id, image_url, distance_km, raw_ocr_text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, message_id) DO NOTHING
                """,
                (profile_id, message_id, image_url, float(distance_km), raw_ocr_text, _now()),
            )
            con.commit()
            row = con.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE user_id = ? AND message_id = ?",
                (profile_id, message_id),
            ).fetchone()
        finally:
            con.close()
        if not row:
            raise RuntimeError(f"Failed to record run for message {message_id}")
        return RunRecord(*row)

    def _object_path(self, object_name: str) -> Path:
        root = self.images_dir.resolve()
        path = (root / object_name).resolve()
        if root != path and root not in path.parents:
            raise ValueError(f"Object name escapes images dir: {object_name!r}")
        return path

    def upload_image(self, object_name: str, data: bytes) -> str:
        path = self._object_path(object_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return object_name

    def public_url(self, object_name: str) -> str:
        return f"{self.public_base_url}/images/{object_name}"

    def runs_for(self, profile_id: str) -> List[RunRecord]:
        con = self._db()
        try:
            rows = con.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE user_id = ? ORDER BY id ASC",
                (profile_id,),
            ).fetchall()
        finally:
            con.close()
        return [RunRecord(*row) for row in rows]

    def ranking(self, limit: int = 50) -> List[Dict[str, Any]]:
        con = self._db()
        try:
            rows = con.execute(
                """
                SELECT p.id, p.display_name, SUM(r.distance_km) AS total_km, COUNT(r.id)
                FROM profiles p
                JOIN runs r ON r.user_id = p.id
                GROUP BY p.id
                ORDER BY total_km DESC, p.created_at ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            con.close()

        out: List[Dict[str, Any]] = []
        for rank, (profile_id, display_name, total_km, runs) in enumerate(rows, start=1):
            out.append(
                {
                    "rank": rank,
                    "profile_id": profile_id,
                    "display_name": display_name,
                    "total_km": round(float(total_km), 2),
                    "runs": int(runs),
                }
            )
        return out


class AsyncStore:
    """Runs SqliteStore calls in worker threads so the event loop keeps serving."""

    def __init__(self, store: SqliteStore):
        self.store = store

    async def get_profile(self, line_user_id: str) -> Optional[Profile]:
        return await asyncio.to_thread(self.store.get_profile, line_user_id)

    async def upsert_profile(self, line_user_id: str, display_name: str) -> Profile:
        return await asyncio.to_thread(self.store.upsert_profile, line_user_id, display_name)

    async def find_run(self, profile_id: str, message_id: str) -> Optional[RunRecord]:
        return await asyncio.to_thread(self.store.find_run, profile_id, message_id)

    async def insert_run(
        self, profile_id: str, message_id: str, image_url: str, distance_km: float, raw_ocr_text: str
    ) -> RunRecord:
        return await asyncio.to_thread(
            self.store.insert_run, profile_id, message_id, image_url, distance_km, raw_ocr_text
        )

    async def upload_image(self, object_name: str, data: bytes) -> str:
        return await asyncio.to_thread(self.store.upload_image, object_name, data)

    async def public_url(self, object_name: str) -> str:
        return self.store.public_url(object_name)

    async def ranking(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.store.ranking, limit)
