"""
Seed the default cancellation policies

Adds (if missing):
- customer_no_show (0 / 100 / 0, in_progress only, explanation required)
- customer_early_cancel (100 / 0 / 0, confirmed and 12h+ before start)
- customer_late_cancel (50 / 0 / 50, confirmed and under 12h before start)
- provider_cancel (100 / 0 / 0, confirmed or in_progress, explanation required)

Run with: python migrations/seed_cancellation_policies.py
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import bookme.models  # noqa: F401,E402
from bookme.database import Base, SessionLocal, engine
from bookme.domain.cancellations.defaults import seed_default_policies


def upgrade():
    """Create the policy tables if needed and insert the default policies"""
    Base.metadata.create_all(bind=engine, checkfirst=True)

    db = SessionLocal()
    try:
        added = seed_default_policies(db)
        if added:
            print(f"✅ Added {added} cancellation policies")
        else:
            print("ℹ️  Cancellation policies already seeded")
    finally:
        db.close()


if __name__ == "__main__":
    try:
        upgrade()
        print("✅ Migration completed successfully!")
    except Exception as e:
        print(f"❌ Migration failed: {e}")
        sys.exit(1)
