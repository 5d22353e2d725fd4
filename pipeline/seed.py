"""
Bibliographic reconciliation pass.

Merges three data dumps into the papers / authors / institutions /
authorships graph:

- data/chiplay_institutions_geo.json   geocoded institutions (optional)
- data/chiplay_papers[_with_doi].json  DBLP paper list (required)
- data/openalex_authorships.jsonl      OpenAlex authorships, one paper per line (optional)

The pass is idempotent: every write is a get-or-create or an update keyed on
a unique column, and nothing is ever deleted, so it can be re-run after the
input files are refreshed.

Usage:
    python -m pipeline.main seed
    python -m pipeline.main seed --data-dir ./data
"""

import json
import re
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from pipeline.config import DOI_RESOLVER_PREFIX, LAST_AUTHOR_ORDER, settings
from pipeline.database import Author, Authorship, Institution, Paper, create_db_engine
from pipeline.utils.text import slugify

T = TypeVar("T")


class SeedError(Exception):
    """Fatal error that aborts the reconciliation pass."""


class MissingInputError(SeedError):
    """A mandatory input file does not exist."""


# =============================================================================
# Transient failure detection and the retrying connection handle
# =============================================================================

# Connection exceptions (class 08), admin shutdown and statement timeout
TRANSIENT_PGCODES = {
    "08000", "08001", "08003", "08004", "08006",
    "57P01", "57P02", "57P03",
    "57014",
}

TRANSIENT_MESSAGES = (
    "could not connect",
    "connection refused",
    "server closed the connection",
    "connection timed out",
    "timeout expired",
    "terminating connection",
)


def is_transient_db_error(exc: BaseException) -> bool:
    """
    True for errors worth retrying on a fresh connection.

    Covers an unreachable server, an exhausted connection pool and an
    operation that timed out. Everything else (constraint violations,
    programming errors) is not transient.
    """
    # Pool exhausted / connection dropped while checking out
    if isinstance(exc, (sa_exc.TimeoutError, sa_exc.DisconnectionError)):
        return True

    if isinstance(exc, sa_exc.DBAPIError):
        if exc.connection_invalidated:
            return True
        if isinstance(exc, sa_exc.OperationalError):
            pgcode = getattr(exc.orig, "pgcode", None)
            if pgcode:
                return pgcode in TRANSIENT_PGCODES
            message = str(exc.orig).lower()
            return any(marker in message for marker in TRANSIENT_MESSAGES)

    return False


class DatabaseHandle:
    """
    Explicit database connection handle for the reconciliation pass.

    Owns one engine and one session. `run()` executes a unit of work, commits
    it, and on a transient failure backs off, rebuilds the engine and session,
    and tries again.
    """

    def __init__(
        self,
        url: str | None = None,
        engine_factory: Callable[[], Engine] | None = None,
        max_retries: int | None = None,
        backoff_step: float | None = None,
        backoff_max: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._engine_factory = engine_factory or (lambda: create_db_engine(url))
        self.max_retries = settings.seed.max_retries if max_retries is None else max_retries
        self.backoff_step = settings.seed.backoff_step if backoff_step is None else backoff_step
        self.backoff_max = settings.seed.backoff_max if backoff_max is None else backoff_max
        self._sleep = sleep
        self.reconnects = 0

        self.engine = self._engine_factory()
        self.session = self._new_session()

    def _new_session(self) -> Session:
        # Objects stay readable after commit and after a reconnect
        return Session(self.engine, autoflush=False, expire_on_commit=False)

    def reconnect(self) -> None:
        """Drop the current engine and session and build new ones."""
        self.close()
        self.engine = self._engine_factory()
        self.session = self._new_session()
        self.reconnects += 1

    def close(self) -> None:
        try:
            self.session.close()
        except sa_exc.SQLAlchemyError as e:
            logger.debug(f"Ignoring error while closing session: {e}")
        self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _execute(self, fn: Callable[[Session], T]) -> T:
        try:
            result = fn(self.session)
            self.session.commit()
            return result
        except Exception:
            try:
                self.session.rollback()
            except sa_exc.SQLAlchemyError as e:
                logger.debug(f"Ignoring error during rollback: {e}")
            raise

    def run(self, label: str, fn: Callable[[Session], T]) -> T:
        """Run `fn(session)` and commit, retrying transient failures."""

        def before_retry(state: RetryCallState) -> None:
            wait = state.next_action.sleep if state.next_action else 0
            logger.warning(
                f"{label}: lost connection (attempt {state.attempt_number}/{self.max_retries}). "
                f"Retrying in {wait * 1000:.0f} ms..."
            )
            self.reconnect()

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_incrementing(start=self.backoff_step, increment=self.backoff_step, max=self.backoff_max),
            retry=retry_if_exception(is_transient_db_error),
            before_sleep=before_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._execute, fn)


# =============================================================================
# Field normalisation
# =============================================================================

_DIGITS = re.compile(r"[0-9]+")


def as_int(value: Any) -> int | None:
    """JSON integer, including integral floats such as 2020.0. Bools are not numbers here."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def as_text(value: Any) -> str | None:
    """Non-empty string or None; other JSON types are not identifiers."""
    return value if isinstance(value, str) and value else None


def to_order(value: Any) -> int | None:
    """
    Normalise an author position.

    Integers (and integral floats) pass through, digit strings are parsed,
    "first" is 1, "last" is a large sentinel so it sorts after everyone else.
    Anything else ("middle", 1.5, None) has no defined order and maps to None.
    """
    number = as_int(value)
    if number is not None:
        return number
    if isinstance(value, str):
        if _DIGITS.fullmatch(value):
            return int(value)
        if value == "first":
            return 1
        if value == "last":
            return LAST_AUTHOR_ORDER
    return None


def doi_from_ee(ee: Any) -> str | None:
    """Extract a DOI from a DBLP "electronic edition" URL (or list of URLs)."""
    candidates = ee if isinstance(ee, list) else [ee]
    for url in candidates:
        if isinstance(url, str) and url.startswith(DOI_RESOLVER_PREFIX):
            doi = url[len(DOI_RESOLVER_PREFIX):]
            if doi:
                return doi
    return None


def paper_doi(record: dict) -> str | None:
    """Explicit DOI if it looks like one, else the DOI behind the `ee` link."""
    doi = record.get("doi")
    if doi and str(doi).startswith("10."):
        return str(doi)
    return doi_from_ee(record.get("ee"))


def paper_key(record: dict) -> str | None:
    """DBLP key of a paper record, wherever the export put it."""
    source = record.get("source")
    if isinstance(source, dict):
        key = source.get("dblp_key") or source.get("dblpKey")
        if key:
            return str(key)
    key = record.get("dblpKey") or record.get("dblp_key")
    return str(key) if key else None


def inst_id_from_external(record: dict) -> str | None:
    """
    Stable institution id.

    The last path segment of the ROR URL wins when present; otherwise a slug
    of the display name. Returns None when neither yields anything.
    """
    ror = (as_text(record.get("ror")) or "").rstrip("/").split("/")[-1]
    if ror:
        return f"inst:ror:{ror}"
    slug = slugify(as_text(record.get("display_name")))
    if not slug:
        return None
    return f"inst:name:{slug}"


def strip_doi_resolver(value: Any) -> str | None:
    if not as_text(value):
        return None
    return value.replace(DOI_RESOLVER_PREFIX, "") or None


# =============================================================================
# Results
# =============================================================================

class LineStatus(str, Enum):
    LINKED = "linked"
    SKIPPED = "skipped"
    PAPER_MISS = "paper_miss"


@dataclass(frozen=True)
class LineOutcome:
    """Tagged result of processing one authorship line."""
    status: LineStatus
    links: int = 0
    reason: str | None = None

    @classmethod
    def skip(cls, reason: str) -> "LineOutcome":
        return cls(LineStatus.SKIPPED, reason=reason)


@dataclass
class SeedStats:
    """Counters for one reconciliation run."""
    institutions_upserted: int = 0
    papers_upserted: int = 0
    papers_dropped: int = 0
    lines_processed: int = 0
    authorships_linked: int = 0
    authorships_created: int = 0
    lines_skipped: int = 0
    papers_missing: int = 0
    id_conflicts: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


# =============================================================================
# Input files
# =============================================================================

def load_json_array(path: Path) -> list:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise SeedError(f"Expected a JSON array in {path}")
    return data


def count_lines(path: Path) -> int:
    """Non-blank lines, the same ones the pass reports progress for."""
    return sum(1 for line in iter_lines(path) if line.strip())


def iter_lines(path: Path) -> Iterator[str]:
    """
    Stream a JSONL file line by line.

    Undecodable bytes become U+FFFD so one damaged line cannot stop the
    stream; it then fails JSON parsing or lookup like any other bad line.
    """
    with open(path, encoding="utf-8", errors="replace") as f:
        for line in f:
            yield line


def resolve_papers_file(data_dir: Path) -> Path:
    """Prefer the DOI-augmented papers export when it exists."""
    with_doi = data_dir / settings.pipeline.papers_with_doi_file
    if with_doi.exists():
        return with_doi
    return data_dir / settings.pipeline.papers_file


# =============================================================================
# The pass
# =============================================================================

GEO_FIELDS = ("name", "country", "lat", "lng", "type")

ProgressCallback = Callable[[int, int | None, str], None]


class Reconciler:
    """
    Materialises the bibliographic graph from the three input dumps.

    All database access goes through the DatabaseHandle, one committed unit
    of work per upsert, so a dropped connection costs at most one retry.
    """

    def __init__(
        self,
        db: DatabaseHandle,
        progress_callback: ProgressCallback | None = None,
        progress_every: int | None = None,
    ):
        self.db = db
        self.progress_callback = progress_callback
        self.progress_every = progress_every or settings.pipeline.progress_every
        self.stats = SeedStats()

    def report_progress(self, current: int, total: int | None = None, status: str = ""):
        if self.progress_callback:
            self.progress_callback(current, total, status)

    # -------------------------------------------------------------------------
    # Institutions (geo file)
    # -------------------------------------------------------------------------

    def seed_institutions_geo(self, geo_records: Iterable[dict]) -> int:
        """
        Create or update institutions from the geocoded list.

        A key that is present with null clears the column; a missing key
        leaves the stored value alone.
        """
        upserted = 0
        for record in geo_records:
            if not isinstance(record, dict):
                continue
            inst_id = as_text(record.get("id")) or inst_id_from_external(
                {"ror": record.get("ror"), "display_name": record.get("name")}
            )
            if not inst_id:
                continue

            values = {name: record[name] for name in GEO_FIELDS if name in record}

            def upsert(session: Session, inst_id=inst_id, values=values):
                institution = session.get(Institution, inst_id)
                if institution is None:
                    session.add(Institution(id=inst_id, **values))
                else:
                    for name, value in values.items():
                        setattr(institution, name, value)

            self.db.run("institution.upsert(geo)", upsert)
            upserted += 1

        self.stats.institutions_upserted += upserted
        logger.info(f"Institutions (geo) upserted: {upserted}")
        return upserted

    # -------------------------------------------------------------------------
    # Papers
    # -------------------------------------------------------------------------

    def seed_papers(self, paper_records: Iterable[dict]) -> int:
        """Create or update papers keyed by DBLP key."""
        upserted = 0
        venue_default = settings.seed.default_venue

        for record in paper_records:
            dblp_key = paper_key(record) if isinstance(record, dict) else None
            if not dblp_key:
                self.stats.papers_dropped += 1
                continue

            doi = paper_doi(record)
            fields = {
                "title": record.get("title"),
                "year": as_int(record.get("year")),
                "venue": record.get("venue") or venue_default,
            }

            def upsert(session: Session, dblp_key=dblp_key, fields=fields, doi=doi) -> str | None:
                paper = session.scalar(select(Paper).where(Paper.dblp_key == dblp_key))
                if paper is None:
                    paper = Paper(dblp_key=dblp_key)
                    session.add(paper)
                for name, value in fields.items():
                    setattr(paper, name, value)

                if doi and paper.doi != doi:
                    owner = session.scalar(select(Paper).where(Paper.doi == doi))
                    if owner is not None and owner is not paper:
                        return owner.dblp_key
                    paper.doi = doi
                return None

            conflict_owner = self.db.run("paper.upsert", upsert)
            if conflict_owner:
                self.stats.id_conflicts += 1
                logger.info(f"  skip DOI for {dblp_key} (in use by {conflict_owner}): {doi}")

            upserted += 1
            if upserted % self.progress_every == 0:
                logger.info(f"  papers upserted: {upserted}")
                self.report_progress(upserted, None, "papers")

        self.stats.papers_upserted += upserted
        logger.info(f"Papers upserted: {upserted}")
        return upserted

    def safe_update_paper_ids(
        self,
        paper: Paper,
        openalex_id: str | None = None,
        doi: str | None = None,
    ) -> dict[str, str]:
        """
        Backfill DOI / OpenAlex ID onto a paper without stealing them.

        A value already owned by a different paper is reported and skipped.
        Returns the fields that were written.
        """
        data: dict[str, str] = {}

        if doi:
            owner = self.db.run(
                "paper.find(doi)",
                lambda session: session.scalar(select(Paper).where(Paper.doi == doi)),
            )
            if owner is None or owner.id == paper.id:
                data["doi"] = doi
            else:
                self.stats.id_conflicts += 1
                logger.info(f"  skip DOI (in use by {owner.dblp_key}): {doi}")

        if openalex_id:
            owner = self.db.run(
                "paper.find(openalex_id)",
                lambda session: session.scalar(select(Paper).where(Paper.openalex_id == openalex_id)),
            )
            if owner is None or owner.id == paper.id:
                data["openalex_id"] = openalex_id
            else:
                self.stats.id_conflicts += 1
                logger.info(f"  skip OpenAlex ID (in use by {owner.dblp_key}): {openalex_id}")

        if data:
            def update(session: Session):
                target = session.get(Paper, paper.id)
                for name, value in data.items():
                    setattr(target, name, value)

            self.db.run("paper.update", update)
        return data

    # -------------------------------------------------------------------------
    # Authorships (OpenAlex JSONL)
    # -------------------------------------------------------------------------

    def seed_authorships_from_openalex(self, lines: Iterable[str], total: int | None = None) -> SeedStats:
        """Link authors and institutions to papers, one JSONL line at a time."""
        line_no = 0
        for line in lines:
            outcome = self.process_line(line)
            if outcome is None:
                continue

            line_no += 1
            self._record(outcome)

            if line_no % self.progress_every == 0 or (total and line_no == total):
                pct = f" ({line_no / total * 100:.1f}%)" if total else ""
                logger.info(
                    f"  processed: {line_no}{f'/{total}' if total else ''}{pct} | "
                    f"links: {self.stats.authorships_linked}"
                )
                self.report_progress(line_no, total, "authorships")

        logger.info(
            f"Authorships: linked={self.stats.authorships_linked} "
            f"(new={self.stats.authorships_created}) | skipped={self.stats.lines_skipped} | "
            f"papers missing={self.stats.papers_missing}"
        )
        return self.stats

    def _record(self, outcome: LineOutcome) -> None:
        self.stats.lines_processed += 1
        if outcome.status is LineStatus.SKIPPED:
            self.stats.lines_skipped += 1
            reason = outcome.reason or "unknown"
            self.stats.skip_reasons[reason] = self.stats.skip_reasons.get(reason, 0) + 1
        elif outcome.status is LineStatus.PAPER_MISS:
            self.stats.papers_missing += 1

    def process_line(self, line: str) -> LineOutcome | None:
        """Parse, validate, resolve and link one line. None for blank lines."""
        if not line.strip():
            return None

        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            return LineOutcome.skip("malformed_json")
        if not isinstance(record, dict):
            return LineOutcome.skip("not_an_object")

        dblp_key = record.get("dblp_key")
        if dblp_key is None or dblp_key == "":
            return LineOutcome.skip("missing_dblp_key")
        if not isinstance(dblp_key, str):
            return LineOutcome.skip("invalid_dblp_key")

        paper = self.db.run(
            "paper.find(dblp_key)",
            lambda session: session.scalar(select(Paper).where(Paper.dblp_key == dblp_key)),
        )
        if paper is None:
            return LineOutcome(LineStatus.PAPER_MISS, reason=str(dblp_key))

        openalex_id = as_text(record.get("id"))
        doi = strip_doi_resolver(record.get("doi"))
        if openalex_id or doi:
            self.safe_update_paper_ids(paper, openalex_id=openalex_id, doi=doi)

        authorships = record.get("authorships")
        links = 0
        for authorship in authorships if isinstance(authorships, list) else []:
            if isinstance(authorship, dict):
                links += self.link_authorship(paper.id, authorship)
        return LineOutcome(LineStatus.LINKED, links=links)

    def link_authorship(self, paper_id: int, authorship: dict) -> int:
        """Upsert the author, each institution and each authorship triple."""
        author_info = authorship.get("author") if isinstance(authorship.get("author"), dict) else {}
        name = as_text(author_info.get("display_name")) or "Unknown"
        author_openalex_id = as_text(author_info.get("id"))
        author_id = self.db.run(
            "author.upsert",
            lambda session: self._upsert_author(session, name, author_openalex_id),
        )
        order = to_order(authorship.get("author_position"))

        institutions = authorship.get("institutions")
        links = 0
        for inst in institutions if isinstance(institutions, list) else []:
            if not isinstance(inst, dict):
                continue
            inst_id = inst_id_from_external(inst)
            if not inst_id:
                continue

            self.db.run(
                "institution.upsert(authorship)",
                lambda session: self._upsert_institution_ref(
                    session, inst_id, as_text(inst.get("display_name")), as_text(inst.get("country_code"))
                ),
            )
            created = self.db.run(
                "authorship.upsert",
                lambda session: self._upsert_authorship(session, paper_id, author_id, inst_id, order),
            )
            links += 1
            self.stats.authorships_linked += 1
            if created:
                self.stats.authorships_created += 1
        return links

    @staticmethod
    def _upsert_author(session: Session, name: str, openalex_id: str | None) -> int:
        """
        Resolve an author.

        By OpenAlex ID when present, else the first author with exactly this
        name, else a new author. Namesakes without an OpenAlex ID collapse into
        one record; that is an accepted limitation.
        """
        if openalex_id:
            author = session.scalar(select(Author).where(Author.openalex_id == openalex_id))
            if author is None:
                author = Author(name=name, openalex_id=openalex_id)
                session.add(author)
            else:
                author.name = name
        else:
            author = session.scalar(
                select(Author).where(Author.name == name).order_by(Author.id).limit(1)
            )
            if author is None:
                author = Author(name=name)
                session.add(author)
        session.flush()
        return author.id

    @staticmethod
    def _upsert_institution_ref(session: Session, inst_id: str, name: str | None, country: str | None) -> None:
        institution = session.get(Institution, inst_id)
        if institution is None:
            session.add(Institution(id=inst_id, name=name, country=country))
            return
        if name is not None:
            institution.name = name
        if country is not None:
            institution.country = country

    @staticmethod
    def _upsert_authorship(
        session: Session, paper_id: int, author_id: int, inst_id: str, order: int | None
    ) -> bool:
        """Create the triple if missing. Returns True when a row was created."""
        existing = session.scalar(
            select(Authorship.id).where(
                Authorship.paper_id == paper_id,
                Authorship.author_id == author_id,
                Authorship.institution_id == inst_id,
            )
        )
        if existing is not None:
            return False
        session.add(Authorship(paper_id=paper_id, author_id=author_id, institution_id=inst_id, order=order))
        return True

    # -------------------------------------------------------------------------
    # Whole run
    # -------------------------------------------------------------------------

    def run(self, data_dir: Path | None = None) -> SeedStats:
        """Run all three steps against the files in `data_dir`."""
        data_dir = Path(data_dir or settings.pipeline.data_dir)
        self.stats.started_at = datetime.utcnow()

        geo_file = data_dir / settings.pipeline.geo_file
        if geo_file.exists():
            self.seed_institutions_geo(load_json_array(geo_file))
        else:
            logger.info("No geo file, skipping.")

        papers_file = resolve_papers_file(data_dir)
        if not papers_file.exists():
            raise MissingInputError(f"Missing papers JSON: {papers_file}")
        self.seed_papers(load_json_array(papers_file))

        openalex_file = data_dir / settings.pipeline.openalex_file
        if openalex_file.exists():
            total = count_lines(openalex_file)
            if total:
                logger.info(f"OpenAlex authorships to process: {total}")
            self.seed_authorships_from_openalex(iter_lines(openalex_file), total=total)
        else:
            logger.info("No OpenAlex JSONL, skipping authorships.")

        self.stats.completed_at = datetime.utcnow()
        self._log_summary()
        return self.stats

    def _log_summary(self) -> None:
        s = self.stats
        logger.info("=" * 60)
        logger.info("RECONCILIATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"  Institutions (geo) upserted: {s.institutions_upserted:,}")
        logger.info(f"  Papers upserted: {s.papers_upserted:,} (dropped without key: {s.papers_dropped:,})")
        logger.info(f"  Authorship lines: {s.lines_processed:,}")
        logger.info(f"  Links: {s.authorships_linked:,} (new: {s.authorships_created:,})")
        logger.info(f"  Skipped: {s.lines_skipped:,} | Papers missing: {s.papers_missing:,}")
        logger.info(f"  Identifier conflicts: {s.id_conflicts:,}")
        if s.duration_seconds is not None:
            logger.info(f"  Duration: {s.duration_seconds:.1f}s")


def run_seed(
    data_dir: Path | None = None,
    db: DatabaseHandle | None = None,
    progress_callback: ProgressCallback | None = None,
) -> SeedStats:
    """Run the pass and always close the handle afterwards."""
    db = db or DatabaseHandle()
    try:
        return Reconciler(db, progress_callback=progress_callback).run(data_dir)
    finally:
        db.close()
