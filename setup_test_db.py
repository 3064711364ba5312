#!/usr/bin/env python3
"""
Create the sample Hacker News database used for local runs.

Usage:
    python setup_test_db.py [path]

Point the service at it with:
    DATA_DATABASE_URL=sqlite:///data/hn_sample.db
"""

import sys
from pathlib import Path

from pixlie_analyst.sample_data import create_sample_database

DEFAULT_PATH = Path("data") / "hn_sample.db"


def main() -> None:
    db_path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_PATH

    print(f"🗄️  Creating sample database at {db_path}...")
    counts = create_sample_database(db_path)
    for table, count in counts.items():
        print(f"   {table}: {count} rows")

    print()
    print("✅ Sample database ready")
    print(f"   export DATA_DATABASE_URL=sqlite:///{db_path}")


if __name__ == "__main__":
    main()
