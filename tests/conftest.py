"""Shared test fixtures for the feature backlog."""

from __future__ import annotations

from pathlib import Path

import pytest

from backlog.database import Feature, create_database


@pytest.fixture
def session_maker(tmp_path: Path):
    """Session maker bound to a fresh SQLite database in tmp_path."""
    engine, session_maker = create_database(tmp_path)
    yield session_maker
    engine.dispose()


@pytest.fixture
def add_features(session_maker):
    """Insert features directly, bypassing the tools. Returns their ids."""

    def _add(*rows: dict) -> list[int]:
        session = session_maker()
        try:
            created = []
            for row in rows:
                feature = Feature(
                    category=row.get("category", "core"),
                    name=row.get("name", "feature"),
                    description=row.get("description", "description"),
                    steps=row.get("steps", ["step"]),
                    priority=row.get("priority", 999),
                    passes=row.get("passes", False),
                    in_progress=row.get("in_progress", False),
                    dependencies=row.get("dependencies"),
                )
                if "id" in row:
                    feature.id = row["id"]
                session.add(feature)
                created.append(feature)
            session.commit()
            return [f.id for f in created]
        finally:
            session.close()

    return _add
