#!/usr/bin/env python3
"""
MedGuard - Database Table Creation Script
Creates access control, alert, audit and rule catalog tables
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError

from medguard.config import settings
from medguard.database import create_all_tables, init_engine
from medguard.models import Base


def main() -> int:
    """Create all database tables"""
    print("=" * 60)
    print("MedGuard - Database Table Creation")
    print("=" * 60)

    db_url = settings.database_url
    print("\nConnecting to database...")
    print(f"URL: {db_url.split('@')[1] if '@' in db_url else 'local'}")

    engine = init_engine(db_url, echo=settings.debug)
    try:
        print("\nCreating all tables...")
        create_all_tables(engine)
    except SQLAlchemyError as e:
        print(f"\n✗ Error creating tables: {e}")
        return 1
    finally:
        engine.dispose()

    print("\n" + "=" * 60)
    print("✓ All tables created successfully!")
    print("=" * 60)

    print("\nTables created:")
    for table in Base.metadata.sorted_tables:
        print(f"  - {table.name}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
