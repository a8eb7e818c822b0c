"""Offline database initialization and connection management."""
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite

from prep_tracker.config import DEFAULT_DB_PATH

SCHEMA = """
CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    category TEXT,
    difficulty TEXT,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_questions_category ON questions(category);
CREATE INDEX IF NOT EXISTS idx_questions_difficulty ON questions(difficulty);
CREATE INDEX IF NOT EXISTS idx_questions_last_modified ON questions(last_modified);

CREATE TABLE IF NOT EXISTS progress (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    track_name TEXT,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_progress_user_id ON progress(user_id);
CREATE INDEX IF NOT EXISTS idx_progress_track_name ON progress(track_name);
CREATE INDEX IF NOT EXISTS idx_progress_last_modified ON progress(last_modified);

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    name TEXT,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tracks_name ON tracks(name);
CREATE INDEX IF NOT EXISTS idx_tracks_last_modified ON tracks(last_modified);

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    name TEXT,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_categories_name ON categories(name);
CREATE INDEX IF NOT EXISTS idx_categories_last_modified ON categories(last_modified);

CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT,
    priority INTEGER,
    timestamp TEXT,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_operation ON sync_queue(operation);
CREATE INDEX IF NOT EXISTS idx_sync_queue_priority ON sync_queue(priority);
CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue(timestamp);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    last_modified TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_settings_last_modified ON settings(last_modified);
"""


@dataclass(frozen=True)
class Collection:
    """Maps a collection name to its table, key column and indexed fields."""
    name: str
    table: str
    key_field: str
    # record field -> column
    indexes: dict = field(default_factory=dict)
    auto_increment: bool = False


COLLECTIONS = {
    c.name: c
    for c in (
        Collection("questions", "questions", "id", {
            "category": "category", "difficulty": "difficulty", "lastModified": "last_modified",
        }),
        Collection("progress", "progress", "id", {
            "userId": "user_id", "trackName": "track_name", "lastModified": "last_modified",
        }),
        Collection("tracks", "tracks", "id", {"name": "name", "lastModified": "last_modified"}),
        Collection("categories", "categories", "id", {"name": "name", "lastModified": "last_modified"}),
        Collection("syncQueue", "sync_queue", "id", {
            "operation": "operation", "priority": "priority", "timestamp": "timestamp",
            "lastModified": "last_modified",
        }, auto_increment=True),
        Collection("settings", "settings", "key", {"lastModified": "last_modified"}),
    )
}


def get_collection(name: str) -> Collection:
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise ValueError(f"Unknown collection: {name}") from None


async def get_connection(db_path: str = DEFAULT_DB_PATH) -> aiosqlite.Connection:
    """Return an open aiosqlite connection with a row factory set."""
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    return conn


async def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize the database, creating all tables if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await get_connection(db_path)
    try:
        await conn.executescript(SCHEMA)
        await conn.commit()
    finally:
        await conn.close()
