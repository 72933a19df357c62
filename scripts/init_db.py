"""Database initialization helper.

Creates the configured database when it does not exist yet, then creates the
recipe tables. Intended for local and dev environments.
"""

import asyncio
import re
import sys

from sqlalchemy import text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import create_async_engine

_DB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")


def _validate_database_name(db_name: str) -> str:
  """Validate a PostgreSQL database name used as an identifier.

  The name cannot be passed as a bind parameter for `CREATE DATABASE`, so it is
  restricted to letters, digits and underscores.
  """
  if not db_name:
    raise ValueError("Target database name is empty.")

  if not _DB_NAME_PATTERN.fullmatch(db_name):
    raise ValueError("Target database name contains invalid characters (allowed: A-Z, a-z, 0-9, _).")

  return db_name


async def create_database_if_not_exists(dsn: str) -> None:
  """Create the configured database if it does not already exist."""
  url = make_url(dsn)
  target_db = _validate_database_name(url.database or "")

  # CREATE DATABASE must run from another database with autocommit.
  postgres_url = url.set(database="postgres")
  if postgres_url.drivername.startswith("postgresql") and "+asyncpg" not in postgres_url.drivername:
    postgres_url = postgres_url.set(drivername="postgresql+asyncpg")

  print(f"Connecting to postgres to check for database '{target_db}'...")
  engine = create_async_engine(postgres_url, isolation_level="AUTOCOMMIT")
  try:
    async with engine.connect() as conn:
      result = await conn.execute(text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": target_db})
      if result.scalar() == 1:
        print(f"Database '{target_db}' already exists.")
      else:
        print(f"Database '{target_db}' does not exist. Creating...")
        await conn.execute(text(f'CREATE DATABASE "{target_db}"'))
        print(f"Database '{target_db}' created successfully.")
  finally:
    await engine.dispose()


async def create_tables() -> None:
  """Create every table registered on the declarative base."""
  from recipegen.core.database import Base, dispose_engine, get_db_engine
  from recipegen.schema import Recipe  # noqa: F401

  engine = get_db_engine()
  if engine is None:
    raise RuntimeError("Database connection is not configured (RECIPEGEN_PG_DSN is missing).")
  try:
    async with engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)
    print("Tables created: " + ", ".join(sorted(Base.metadata.tables)))
  finally:
    await dispose_engine()


async def main() -> None:
  from recipegen.config import get_database_settings

  dsn = get_database_settings().pg_dsn
  if not dsn:
    print("Error: RECIPEGEN_PG_DSN is not set.")
    sys.exit(1)

  try:
    await create_database_if_not_exists(dsn)
    await create_tables()
  except Exception as e:  # noqa: BLE001
    print(f"Error initializing database: {e}")
    sys.exit(1)


if __name__ == "__main__":
  asyncio.run(main())
