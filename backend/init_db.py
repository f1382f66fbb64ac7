"""
Database initialization script
Run this to create tables and seed the platform default commission rule
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from settlement.core.database import engine, Base, SessionLocal
from settlement.services.rules import ensure_default_rule
import settlement.models  # noqa: F401


def init_db():
    """Initialize database with tables"""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("✓ Tables created successfully")


def seed_data():
    """Seed initial data"""
    db = SessionLocal()
    try:
        print("\nSeeding initial data...")
        rule = ensure_default_rule(db)
        if rule:
            print(f"✓ Platform default rule created ({rule.commission_rate * 100:.2f}%)")
        else:
            print("✓ Global commission rule already present")
    except Exception as e:
        print(f"✗ Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    init_db()
    seed_data()
    print("\n✓ Database initialization complete!")
