#!/usr/bin/env python3
"""
HealthBridge Core - Database Table Creation Script
Creates all tables using SQLAlchemy ORM
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings
from app.database import create_db_engine
from app.models import Base


def create_all_tables(database_url: str = None) -> int:
    """Create all database tables"""
    print("=" * 60)
    print("HealthBridge Core - Database Table Creation")
    print("=" * 60)

    db_url = database_url or settings.database_url
    print("\nConnecting to database...")
    print(f"URL: {db_url.split('@')[1] if '@' in db_url else db_url}")

    try:
        engine = create_db_engine(db_url, echo=settings.debug)

        print("\nCreating all tables...")
        Base.metadata.create_all(engine)

        print("\n" + "=" * 60)
        print("✓ All tables created successfully!")
        print("=" * 60)

        print("\nTables created:")
        for table in Base.metadata.sorted_tables:
            print(f"  - {table.name}")

        return 0

    except Exception as e:
        print(f"\n✗ Error creating tables: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(create_all_tables(sys.argv[1] if len(sys.argv) > 1 else None))
