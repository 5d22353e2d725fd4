# SPDX-License-Identifier: MIT
"""Pytest configuration and fixtures for Game Leadership Map tests."""

import json
import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Set test environment variables before importing the pipeline: the engine is
# created at import time. A file database survives DatabaseHandle.reconnect().
_TEST_DB_DIR = tempfile.mkdtemp(prefix="glmap-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'test.db'}"
os.environ.setdefault("DISABLE_LOGGING", "1")


@pytest.fixture
def db_engine():
    """Fresh schema on the shared test database."""
    from pipeline.database import create_all_tables, drop_all_tables, engine

    drop_all_tables(bind=engine)
    create_all_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator:
    from pipeline.database import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sleeps() -> list:
    """Delays requested by the retry policy, recorded instead of slept."""
    return []


@pytest.fixture
def db_handle(db_engine, sleeps):
    from pipeline.seed import DatabaseHandle

    handle = DatabaseHandle(sleep=sleeps.append)
    yield handle
    handle.close()


@pytest.fixture
def reconciler(db_handle):
    from pipeline.seed import Reconciler

    return Reconciler(db_handle)


@pytest.fixture
def sample_papers() -> list:
    return [{"dblpKey": "conf/chiplay/X20", "title": "T", "year": 2020}]


@pytest.fixture
def sample_geo() -> list:
    return [{"id": "inst:ror:01xyz", "name": "Acme U", "country": "US", "lat": 1.0, "lng": 2.0}]


@pytest.fixture
def sample_authorship_line() -> dict:
    return {
        "dblp_key": "conf/chiplay/X20",
        "authorships": [
            {
                "author": {"display_name": "A. Smith"},
                "institutions": [{"ror": "https://ror.org/01xyz", "display_name": "Acme U"}],
                "author_position": "first",
            }
        ],
    }


@pytest.fixture
def data_dir(tmp_path, sample_papers, sample_geo, sample_authorship_line) -> Path:
    """A data directory holding all three input dumps."""
    (tmp_path / "chiplay_papers.json").write_text(json.dumps(sample_papers), encoding="utf-8")
    (tmp_path / "chiplay_institutions_geo.json").write_text(json.dumps(sample_geo), encoding="utf-8")
    (tmp_path / "openalex_authorships.jsonl").write_text(
        json.dumps(sample_authorship_line) + "\n", encoding="utf-8"
    )
    return tmp_path


@pytest.fixture
def sample_submission() -> dict:
    """A valid submission form as the front end posts it."""
    return {
        "contactName": "Jane Doe",
        "contactEmail": "jane@example.org",
        "submitterType": "faculty",
        "institutionName": "Acme University",
        "institutionCountry": "us",
        "institutionCountryName": "United States",
        "institutionCity": "Springfield",
        "institutionWebsite": "https://acme.example.org/games",
        "leadershipApproach": "We run a weekly playtesting lab open to all students.",
        "latitude": "",
        "longitude": "",
    }


@pytest.fixture
def no_geocode():
    """Geocoder stand-in that never finds anything."""
    from pipeline.geocode import GeocodeOutcome

    calls = []

    def geocoder(**kwargs):
        calls.append(kwargs)
        return GeocodeOutcome(status="no_results")

    geocoder.calls = calls
    return geocoder
