"""
Database Models and Connection
==============================

SQLite feature store using SQLAlchemy.

The store owns the feature rows; the dependency resolver only ever sees the
snapshot returned by load_snapshot().
"""

import logging
from pathlib import Path

from sqlalchemy import Boolean, Column, Integer, String, Text, create_engine, func, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.types import JSON

logger = logging.getLogger(__name__)

Base = declarative_base()


class Feature(Base):
    """A unit of work in the backlog."""

    __tablename__ = "features"

    id = Column(Integer, primary_key=True, index=True)
    priority = Column(Integer, nullable=False, default=999, index=True)
    category = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    steps = Column(JSON, nullable=False)  # Stored as JSON array
    passes = Column(Boolean, nullable=False, default=False, index=True)
    in_progress = Column(Boolean, nullable=False, default=False, index=True)
    # Feature IDs that must pass before this one can start; NULL = none
    dependencies = Column(JSON, nullable=True, default=None)

    def to_dict(self) -> dict:
        """Convert feature to the dict shape the dependency resolver consumes."""
        return {
            "id": self.id,
            "priority": self.priority,
            "category": self.category,
            "name": self.name,
            "description": self.description,
            "steps": self.steps,
            "passes": bool(self.passes),
            "in_progress": bool(self.in_progress),
            "dependencies": self.get_dependencies_safe(),
        }

    def get_dependencies_safe(self) -> list[int]:
        """Safely extract dependencies, handling NULL and malformed data."""
        if isinstance(self.dependencies, list):
            return [d for d in self.dependencies if isinstance(d, int)]
        return []


def get_database_path(project_dir: Path) -> Path:
    """Return the path to the SQLite database for a project."""
    return project_dir / "features.db"


def get_database_url(project_dir: Path) -> str:
    """Return the SQLAlchemy database URL for a project.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    return f"sqlite:///{get_database_path(project_dir).as_posix()}"


def create_database(project_dir: Path) -> tuple:
    """
    Create database and return engine + session maker.

    Args:
        project_dir: Directory containing the project

    Returns:
        Tuple of (engine, SessionLocal)
    """
    engine = create_engine(get_database_url(project_dir), connect_args={
        "check_same_thread": False,
        "timeout": 30  # Wait up to 30s for locks
    })
    Base.metadata.create_all(bind=engine)

    # WAL lets readers take snapshots while another process writes
    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.execute(text("PRAGMA busy_timeout=30000"))
        conn.commit()

    logger.debug("Opened feature database %s", get_database_path(project_dir))
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal


def load_snapshot(session: Session) -> list[dict]:
    """Load every feature as a dict, in id order."""
    return [f.to_dict() for f in session.query(Feature).order_by(Feature.id).all()]


def get_next_priority(session: Session) -> int:
    """Return 1 + the current maximum priority (1 for an empty backlog).

    Only call this while holding the priority lock, and commit the rows that
    use the value before releasing it.
    """
    max_priority = session.query(func.max(Feature.priority)).scalar()
    return 1 if max_priority is None else max_priority + 1


def begin_write(session: Session) -> None:
    """Take the SQLite write lock before reading.

    Must be the session's first statement. Other connections block on their
    own writes (up to the busy timeout) until this session commits or rolls
    back, so a read-check-write sequence sees no concurrent change.
    """
    session.execute(text("BEGIN IMMEDIATE"))
