#!/usr/bin/env python3
"""
Create the database schema and seed the tag table.

Enables the pgvector extension, creates every table and index declared in
legal_qa/db/models.py (including the HNSW index on response embeddings),
and inserts the tag definitions from the keyword table.

Safe to run repeatedly: existing tables and tags are left as they are.

Usage:
    uv run python scripts/init_db.py
"""

import asyncio

from sqlalchemy import text

from legal_qa.db.engine import async_engine, async_session_factory
from legal_qa.db.models import Base
from legal_qa.db.repository import SqlAlchemyRepository
from legal_qa.services.tagger import get_tag_catalog


async def init_db() -> None:
    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
    print("Schema ready")

    catalog = get_tag_catalog()
    repository = SqlAlchemyRepository(async_session_factory)
    seeded = await repository.ensure_tags(catalog.definitions.values())
    print(f"Seeded {seeded} tags")

    await async_engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_db())
