"""
Sample Hacker News style dataset for local runs and tests.

Creates the hn_items, entities and entity_relations tables the built-in
tools query.
"""

import sqlite3
from pathlib import Path
from typing import Dict, Union

SCHEMA = """
CREATE TABLE IF NOT EXISTS hn_items (
    id INTEGER PRIMARY KEY,
    item_type TEXT NOT NULL,
    author TEXT,
    time INTEGER NOT NULL,
    title TEXT,
    url TEXT,
    text TEXT,
    score INTEGER NOT NULL DEFAULT 0,
    descendants INTEGER NOT NULL DEFAULT 0,
    parent INTEGER REFERENCES hn_items(id)
);
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY,
    item_id INTEGER NOT NULL REFERENCES hn_items(id),
    entity_type TEXT NOT NULL,
    entity_value TEXT NOT NULL,
    confidence REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS entity_relations (
    id INTEGER PRIMARY KEY,
    subject_entity_id INTEGER NOT NULL REFERENCES entities(id),
    object_entity_id INTEGER NOT NULL REFERENCES entities(id),
    relation_type TEXT NOT NULL,
    confidence REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_items_author ON hn_items(author);
CREATE INDEX IF NOT EXISTS idx_entities_value ON entities(entity_value);
"""

# id, item_type, author, time, title, url, text, score, descendants, parent
ITEMS = [
    (1, "story", "pg", 1700000000, "Show HN: A Lisp in Rust", "https://example.com/lisp-rust", None, 250, 3, None),
    (2, "story", "dang", 1700003600, "Ask HN: Best resources for learning SQL?", None, "Looking for books and courses.", 120, 2, None),
    (3, "story", "tptacek", 1700007200, "Security lessons from the OpenSSL bug", "https://example.com/openssl", None, 310, 0, None),
    (4, "story", "patio11", 1700010800, "Pricing advice for SaaS founders", "https://example.com/pricing", None, 180, 0, None),
    (5, "story", "jacquesm", 1700014400, "Rust 2.0 roadmap discussed", "https://example.com/rust-2", None, 95, 0, None),
    (6, "story", "pg", 1700018000, "How to start a startup", "https://example.com/startup", None, 420, 0, None),
    (7, "job", "whoishiring", 1700021600, "OpenAI is hiring engineers", "https://example.com/jobs", None, 1, 0, None),
    (8, "comment", "tptacek", 1700001000, None, None, "Rust makes this much safer.", 0, 0, 1),
    (9, "comment", "dang", 1700002000, None, None, "Please keep the thread civil.", 0, 0, 1),
    (10, "comment", "patio11", 1700004000, None, None, "SQL for Mere Mortals is great.", 0, 0, 2),
    (11, "comment", "jacquesm", 1700005000, None, None, "Lisp in Rust is a fun project.", 0, 0, 1),
    (12, "comment", "pg", 1700006000, None, None, "Start with SQLite.", 0, 0, 2),
    (13, "story", "sama", 1700025200, "OpenAI announces new models", "https://example.com/models", None, 500, 1, None),
    (14, "comment", "tptacek", 1700026000, None, None, "Interesting security implications.", 0, 0, 13),
]

# id, item_id, entity_type, entity_value, confidence
ENTITIES = [
    (1, 1, "technology", "Rust", 0.95),
    (2, 1, "technology", "Lisp", 0.90),
    (3, 5, "technology", "Rust", 0.92),
    (4, 8, "technology", "Rust", 0.85),
    (5, 3, "technology", "OpenSSL", 0.97),
    (6, 7, "company", "OpenAI", 0.99),
    (7, 13, "company", "OpenAI", 0.98),
    (8, 13, "person", "Sam Altman", 0.60),
    (9, 6, "person", "Paul Graham", 0.80),
    (10, 12, "technology", "SQLite", 0.90),
    (11, 6, "company", "Y Combinator", 0.70),
]

# id, subject_entity_id, object_entity_id, relation_type, confidence
RELATIONS = [
    (1, 8, 7, "works_at", 0.90),
    (2, 9, 11, "founded", 0.95),
    (3, 2, 1, "implemented_in", 0.60),
]


def create_sample_database(db_path: Union[str, Path]) -> Dict[str, int]:
    """
    Create (or refresh) the sample database.

    Returns:
        Row count per table
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(path) as conn:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.executescript(SCHEMA)
        conn.execute("DELETE FROM entity_relations")
        conn.execute("DELETE FROM entities")
        conn.execute("DELETE FROM hn_items")
        conn.executemany("INSERT INTO hn_items VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)", ITEMS)
        conn.executemany("INSERT INTO entities VALUES (?, ?, ?, ?, ?)", ENTITIES)
        conn.executemany("INSERT INTO entity_relations VALUES (?, ?, ?, ?, ?)", RELATIONS)

        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ("hn_items", "entities", "entity_relations")
        }
