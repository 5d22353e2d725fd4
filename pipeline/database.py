"""
Database models for the Game Leadership Map.

Uses SQLAlchemy 2.0. The schema targets PostgreSQL in production and runs
unchanged on SQLite for local work and tests.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    create_engine,
    String,
    Integer,
    Float,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.sql import func

from pipeline.config import settings


# =============================================================================
# Database Engine and Session
# =============================================================================

def create_db_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine, applying PostgreSQL pool settings where they apply."""
    url = url or settings.database.url
    options = {"echo": settings.pipeline.log_level == "DEBUG", "pool_pre_ping": True}
    if url.startswith("postgresql"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,        # Connection timeout to prevent hanging
            pool_recycle=1800,      # Recycle connections every 30 minutes
            connect_args={
                "connect_timeout": 10,
                "options": "-c statement_timeout=30000",  # 30s query timeout
            },
        )
    options.update(kwargs)
    return create_engine(url, **options)


engine = create_db_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Yield a session and always close it."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_session():
    """Context manager for database sessions."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Generic JSON everywhere, JSONB on PostgreSQL
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# Base Model
# =============================================================================

class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# Bibliographic Graph
# =============================================================================

class Paper(Base):
    """
    A publication keyed by its DBLP key.

    DOI and OpenAlex ID are optional but unique across papers; the first paper
    to claim one keeps it.
    """
    __tablename__ = "papers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dblp_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    doi: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    openalex_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    venue: Mapped[str] = mapped_column(String(200), nullable=False, default="CHI PLAY")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    authorships: Mapped[List["Authorship"]] = relationship("Authorship", back_populates="paper")

    def __repr__(self) -> str:
        return f"<Paper {self.dblp_key}>"


class Institution(Base):
    """
    Research institution shown on the map.

    The id is "inst:ror:<ror id>" when a ROR identifier is known, otherwise
    "inst:name:<slug of the display name>". The id is never rewritten.
    """
    __tablename__ = "institutions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True, index=True)
    country: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, index=True)
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # education, company, ...

    authorships: Mapped[List["Authorship"]] = relationship("Authorship", back_populates="institution")

    def __repr__(self) -> str:
        return f"<Institution {self.id} ({self.name})>"


class Author(Base):
    """Paper author, identified by OpenAlex ID when one is known."""
    __tablename__ = "authors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    openalex_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)

    authorships: Mapped[List["Authorship"]] = relationship("Authorship", back_populates="author")

    def __repr__(self) -> str:
        return f"<Author {self.name}>"


class Authorship(Base):
    """One author's affiliation on one paper."""
    __tablename__ = "authorships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id", ondelete="CASCADE"), nullable=False)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("authors.id", ondelete="CASCADE"), nullable=False)
    institution_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("institutions.id", ondelete="CASCADE"), nullable=False
    )

    # Author position; NULL means no defined order (not zero)
    order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    paper: Mapped["Paper"] = relationship("Paper", back_populates="authorships")
    author: Mapped["Author"] = relationship("Author", back_populates="authorships")
    institution: Mapped["Institution"] = relationship("Institution", back_populates="authorships")

    __table_args__ = (
        UniqueConstraint("paper_id", "author_id", "institution_id", name="uq_authorship_triple"),
        Index("idx_authorships_institution", "institution_id"),
        Index("idx_authorships_author", "author_id"),
    )

    def __repr__(self) -> str:
        return f"<Authorship paper={self.paper_id} author={self.author_id} inst={self.institution_id}>"


# =============================================================================
# Community Submissions (Staging Table for Moderation)
# =============================================================================


class Submission(Base):
    """
    Community-submitted leadership approach for an institution.

    Every submission starts as pending and is approved or rejected by an admin.
    """
    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Contact
    contact_name: Mapped[str] = mapped_column(String(120), nullable=False)
    contact_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    submitter_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Institution as entered
    institution_name: Mapped[str] = mapped_column(String(160), nullable=False)
    institution_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    institution_country_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    institution_city: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    location_query: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    institution_website: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    leadership_approach: Mapped[str] = mapped_column(Text, nullable=False)

    # Location: as submitted, and as resolved by geocoding or linking
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolved_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    resolved_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    geocode_status: Mapped[str] = mapped_column(String(20), default="skipped")  # success, no_results, error, skipped, linked, manual
    geocode_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    submission_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    # Review status: pending, approved, rejected
    status: Mapped[str] = mapped_column(String(20), default="pending")
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Links to existing institutions
    institution_id: Mapped[Optional[str]] = mapped_column(
        String(255), ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True
    )
    duplicate_of_id: Mapped[Optional[str]] = mapped_column(
        String(255), ForeignKey("institutions.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    institution: Mapped[Optional["Institution"]] = relationship("Institution", foreign_keys=[institution_id])
    duplicate_of: Mapped[Optional["Institution"]] = relationship("Institution", foreign_keys=[duplicate_of_id])

    __table_args__ = (
        Index("idx_submissions_status", "status"),
        Index("idx_submissions_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Submission {self.institution_name} ({self.status})>"


class SubmissionRequest(Base):
    """
    Request log for submissions and searches.

    Rate limits are enforced by counting these rows per IP and kind.
    """
    __tablename__ = "submission_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_submission_requests_ip_type_date", "ip", "type", "created_at"),
    )


# =============================================================================
# Helper Functions
# =============================================================================

def create_all_tables(bind: Engine | None = None):
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_all_tables(bind: Engine | None = None):
    """Drop all database tables. USE WITH CAUTION!"""
    Base.metadata.drop_all(bind=bind or engine)
