#!/usr/bin/env python3
"""
MedGuard - Rule Catalog Seed Script
Loads starter interaction rules, dosage warnings and drug classes
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.exc import SQLAlchemyError

from medguard.bootstrap import configure_logging
from medguard.database import create_all_tables, create_session_factory, init_engine
from medguard.seed_data import seed_rule_catalog


def main() -> int:
    configure_logging()
    print("=" * 60)
    print("MedGuard - Rule Catalog Seed")
    print("=" * 60)

    engine = init_engine()
    try:
        create_all_tables(engine)
        inserted = seed_rule_catalog(create_session_factory(engine))
    except SQLAlchemyError as e:
        print(f"\n✗ Seeding failed: {e}")
        return 1
    finally:
        engine.dispose()

    if not inserted:
        print("\nRule catalog already populated, nothing to do")
        return 0

    print("\n✓ Rule catalog seeded:")
    for table, count in inserted.items():
        print(f"  - {table}: {count} rows")
    return 0


if __name__ == "__main__":
    sys.exit(main())
