#!/usr/bin/env python3
"""
Database initialization script for Docker.
Creates the job and cache tables if they don't exist, then purges expired cache rows.
"""

import sys

from sqlalchemy.exc import SQLAlchemyError

import models  # noqa: F401  registers the tables on Base.metadata
from cache import purge_expired
from database import Base, SessionLocal, engine


def init_database():
    """Initialize the database by creating all tables."""
    try:
        print("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        print("✅ Database tables created successfully!")
    except SQLAlchemyError as e:
        print(f"❌ Error creating database tables: {e}")
        sys.exit(1)

    db = SessionLocal()
    try:
        removed = purge_expired(db)
        print(f"🧹 Expired cache rows removed: {removed}")
    finally:
        db.close()


if __name__ == "__main__":
    init_database()
