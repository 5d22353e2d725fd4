"""
Read side of the map: autocomplete searches and marker feeds.

Searches are rate limited per IP through the request log; marker feeds are
plain queries and are what the static exporter writes out.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from pipeline.config import REQUEST_INSTITUTION_SEARCH, REQUEST_SUBMITTER_SEARCH, settings
from pipeline.database import Author, Authorship, Institution, Submission
from pipeline.rate_limit import check_rate_limit, log_request
from pipeline.submissions import pick_submission_coordinates
from pipeline.utils.geo import has_coordinates
from pipeline.utils.text import clean_text

MAX_SEARCH_LIMIT = 25
TOP_AUTHORS = 5


@dataclass
class SearchResult:
    status_code: int
    body: dict
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def suggestions(self) -> list[dict]:
        return self.body.get("suggestions", [])


def clamp_limit(limit: Any, default: int) -> int:
    """Parse a requested limit; unusable values fall back to the default."""
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = 0
    return min(max(value or default, 1), MAX_SEARCH_LIMIT)


def _rate_limited(session: Session, ip: str, kind: str, user_agent: str | None) -> SearchResult | None:
    decision = check_rate_limit(session, ip, kind)
    if decision.allowed:
        return None
    log_request(session, ip, kind, False, user_agent=user_agent, error="rate_limited")
    session.commit()
    return SearchResult(
        429,
        {"error": "Too many searches. Please slow down.", "retry_after": decision.retry_after},
        headers={"Retry-After": str(decision.retry_after)},
    )


def _failed(session: Session, ip: str, kind: str, user_agent: str | None, what: str) -> SearchResult:
    session.rollback()
    log_request(session, ip, kind, False, user_agent=user_agent, error="search_failed")
    session.commit()
    return SearchResult(500, {"error": f"Unable to search {what} right now."})


# =============================================================================
# Searches
# =============================================================================

def search_institutions(
    session: Session,
    q: str | None,
    ip: str,
    user_agent: str | None = None,
    limit: Any = None,
    country: str | None = None,
) -> SearchResult:
    """Institutions whose name contains `q`, with their authorship counts."""
    q = clean_text(q)
    if not q:
        return SearchResult(200, {"suggestions": []})

    limit = clamp_limit(limit, settings.rate_limit.institution_search_result_limit)
    country = clean_text(country).upper()

    blocked = _rate_limited(session, ip, REQUEST_INSTITUTION_SEARCH, user_agent)
    if blocked:
        return blocked

    paper_count = (
        select(func.count(Authorship.id))
        .where(Authorship.institution_id == Institution.id)
        .correlate(Institution)
        .scalar_subquery()
    )
    stmt = select(Institution, paper_count).where(Institution.name.icontains(q, autoescape=True))
    if len(country) == 2:
        stmt = stmt.where(Institution.country == country)
    stmt = stmt.order_by(Institution.name.asc(), Institution.id.asc()).limit(limit)

    try:
        rows = session.execute(stmt).all()
        log_request(session, ip, REQUEST_INSTITUTION_SEARCH, True, user_agent=user_agent)
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Institution search failed: {e}")
        return _failed(session, ip, REQUEST_INSTITUTION_SEARCH, user_agent, "institutions")

    suggestions = [
        {
            "id": inst.id,
            "name": inst.name,
            "country": inst.country,
            "lat": inst.lat,
            "lng": inst.lng,
            "paperCount": count or 0,
        }
        for inst, count in rows
    ]
    return SearchResult(200, {"suggestions": suggestions})


def search_submitters(
    session: Session,
    q: str | None,
    ip: str,
    user_agent: str | None = None,
    limit: Any = None,
) -> SearchResult:
    """
    Suggest people by name.

    Earlier submitters come first (newest submission first), then paper
    authors; one suggestion per name and email pair.
    """
    q = clean_text(q)
    if not q:
        return SearchResult(200, {"suggestions": []})

    limit = clamp_limit(limit, settings.rate_limit.submitter_result_limit)

    blocked = _rate_limited(session, ip, REQUEST_SUBMITTER_SEARCH, user_agent)
    if blocked:
        return blocked

    try:
        submission_rows = session.execute(
            select(Submission.contact_name, Submission.contact_email)
            .where(Submission.contact_name.icontains(q, autoescape=True))
            .order_by(Submission.created_at.desc(), Submission.id.desc())
            .limit(limit * 3)
        ).all()
        author_names = session.scalars(
            select(Author.name)
            .where(Author.name.icontains(q, autoescape=True))
            .order_by(Author.name.asc())
            .limit(limit * 3)
        ).all()
        log_request(session, ip, REQUEST_SUBMITTER_SEARCH, True, user_agent=user_agent)
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Submitter search failed: {e}")
        return _failed(session, ip, REQUEST_SUBMITTER_SEARCH, user_agent, "submitters")

    seen: set[str] = set()
    suggestions: list[dict] = []

    candidates = [(name, email, "submission") for name, email in submission_rows]
    candidates += [(name, None, "author") for name in author_names]

    for raw_name, raw_email, source in candidates:
        if len(suggestions) >= limit:
            break
        name = clean_text(raw_name)
        if not name:
            continue
        email = clean_text(raw_email)
        key = f"{name.lower()}|{email.lower()}"
        if key in seen:
            continue
        seen.add(key)
        suggestions.append({"name": name, "email": email or None, "source": source})

    return SearchResult(200, {"suggestions": suggestions})


# =============================================================================
# Marker feeds
# =============================================================================

def institution_markers(session: Session) -> list[dict]:
    """Institutions with coordinates and at least one authorship."""
    rows = session.execute(
        select(
            Institution.id,
            Institution.name,
            Institution.country,
            Institution.lat,
            Institution.lng,
            func.count(func.distinct(Authorship.paper_id)).label("paper_count"),
        )
        .join(Authorship, Authorship.institution_id == Institution.id)
        .where(Institution.lat.is_not(None), Institution.lng.is_not(None))
        .group_by(Institution.id, Institution.name, Institution.country, Institution.lat, Institution.lng)
    ).all()

    author_counts = session.execute(
        select(Authorship.institution_id, Author.name, func.count().label("n"))
        .join(Author, Author.id == Authorship.author_id)
        .group_by(Authorship.institution_id, Author.name)
    ).all()

    ranked: dict[str, list[tuple[int, str]]] = defaultdict(list)
    for institution_id, name, n in author_counts:
        if name is not None:
            ranked[institution_id].append((-n, name))

    markers = []
    for row in rows:
        top = [name for _, name in sorted(ranked.get(row.id, []))[:TOP_AUTHORS]]
        markers.append({
            "id": row.id,
            "name": row.name,
            "country": row.country,
            "lat": float(row.lat),
            "lng": float(row.lng),
            "paper_count": int(row.paper_count),
            "top_authors": top,
        })

    markers.sort(key=lambda m: (-m["paper_count"], m["id"]))
    return markers


def community_markers(session: Session) -> list[dict]:
    """Approved submissions grouped into one marker per institution."""
    submissions = session.scalars(
        select(Submission)
        .where(Submission.status == "approved")
        .options(selectinload(Submission.institution))
        .order_by(Submission.updated_at.desc(), Submission.id.desc())
    ).all()

    grouped: dict[str, dict] = {}
    for submission in submissions:
        institution = submission.institution
        coords = pick_submission_coordinates(submission)
        if coords is None and institution is not None and has_coordinates(institution.lat, institution.lng):
            coords = (institution.lat, institution.lng)
        if coords is None:
            continue

        key = submission.institution_id or submission.institution_name or str(submission.id)
        group = grouped.get(key)
        if group is None:
            group = grouped[key] = {
                "id": key,
                "name": institution.name if institution is not None and institution.name else submission.institution_name,
                "country": submission.institution_country or (institution.country if institution is not None else None),
                "countryName": submission.institution_country_name,
                "lat": coords[0],
                "lng": coords[1],
                "status": submission.status,
                "geocodeStatus": submission.geocode_status,
                "leaders": [],
            }

        group["leaders"].append({
            "id": submission.id,
            "name": submission.contact_name,
            "leadership": submission.leadership_approach,
            "website": submission.institution_website,
            "submittedAt": submission.created_at.isoformat() if submission.created_at else None,
        })

    return list(grouped.values())
