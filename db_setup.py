import argparse
import sqlite3

import config
from logger import get_logger

logger = get_logger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phone_number TEXT,
        email TEXT,
        linked_id INTEGER,
        link_precedence TEXT NOT NULL CHECK(link_precedence IN ('primary', 'secondary')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deleted_at TEXT,
        FOREIGN KEY (linked_id) REFERENCES contacts (id)
    )
'''

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts (email) WHERE deleted_at IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_contacts_phone_number ON contacts (phone_number) WHERE deleted_at IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_contacts_linked_id ON contacts (linked_id) WHERE deleted_at IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_contacts_link_precedence ON contacts (link_precedence) WHERE deleted_at IS NULL",
)


def get_db_connection(db_path: str = None):
    conn = sqlite3.connect(db_path or config.DB_NAME, timeout=config.SQLITE_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str = None):
    conn = get_db_connection(db_path)
    try:
        conn.execute(SCHEMA)
        for statement in INDEXES:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
    logger.info("Contacts schema ready at %s", db_path or config.DB_NAME)


def reset_db(db_path: str = None):
    """Drop every contact row and recreate the schema."""
    conn = get_db_connection(db_path)
    try:
        conn.execute("DROP TABLE IF EXISTS contacts")
        conn.commit()
    finally:
        conn.close()
    logger.warning("Contacts table dropped at %s", db_path or config.DB_NAME)
    init_db(db_path)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Manage the contacts database")
    parser.add_argument("command", choices=["migrate", "reset"],
                        help="migrate: create missing tables and indexes; reset: drop and recreate")
    parser.add_argument("--db", default=None,
                        help="SQLite file (default: BITESPEED_DB_PATH or contacts.db)")
    args = parser.parse_args(argv)

    if args.command == "reset":
        reset_db(args.db)
    else:
        init_db(args.db)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
