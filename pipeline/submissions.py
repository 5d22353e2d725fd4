"""
Community submissions: intake and admin moderation.

Intake validates a submitted leadership approach, applies the request-log
rate limit, resolves coordinates (linked institution, then geocoding, then
the submitted values) and stores the submission as pending. Moderation
approves, rejects, resets, links and deletes submissions.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from pipeline.config import REQUEST_SUBMISSION, settings
from pipeline.database import Institution, Submission
from pipeline.geocode import GeocodeOutcome, geocode_location
from pipeline.rate_limit import check_rate_limit, log_request
from pipeline.utils.geo import has_coordinates, normalize_number
from pipeline.utils.text import clean_text, is_valid_email, is_valid_url

MAX_TEXT_LENGTH = 800
MAX_CONTACT_NAME = 120
MAX_INSTITUTION_NAME = 160
RECENT_REVIEWED_LIMIT = 20


class ModerationError(Exception):
    """An admin action could not be applied."""


# =============================================================================
# Intake
# =============================================================================

class SubmissionCreate(BaseModel):
    """Submitted form, accepted with the front end's camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", validate_default=True)

    contact_name: str = Field("", alias="contactName")
    contact_email: Optional[str] = Field(None, alias="contactEmail")
    submitter_type: Optional[str] = Field(None, alias="submitterType")
    institution_name: str = Field("", alias="institutionName")
    institution_country: Optional[str] = Field(None, alias="institutionCountry")
    institution_country_name: Optional[str] = Field(None, alias="institutionCountryName")
    institution_city: Optional[str] = Field(None, alias="institutionCity")
    institution_website: Optional[str] = Field(None, alias="institutionWebsite")
    leadership_approach: str = Field("", alias="leadershipApproach")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    institution_id: Optional[str] = Field(None, alias="institutionId")
    duplicate_of_id: Optional[str] = Field(None, alias="duplicateOfId")

    @field_validator("contact_name", "institution_name", "leadership_approach", mode="before")
    @classmethod
    def coerce_required_text(cls, v: Any) -> str:
        return clean_text(v)

    @field_validator(
        "contact_email", "submitter_type", "institution_country", "institution_country_name",
        "institution_city", "institution_website", "institution_id", "duplicate_of_id",
        mode="before",
    )
    @classmethod
    def coerce_optional_text(cls, v: Any) -> str | None:
        return clean_text(v) or None

    @field_validator("contact_name")
    @classmethod
    def validate_contact_name(cls, v: str) -> str:
        if not v:
            raise ValueError("contactName is required.")
        if len(v) > MAX_CONTACT_NAME:
            raise ValueError(f"contactName must be {MAX_CONTACT_NAME} characters or fewer.")
        return v

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: str | None) -> str | None:
        if v and not is_valid_email(v):
            raise ValueError("contactEmail must be a valid email address.")
        return v

    @field_validator("institution_name")
    @classmethod
    def validate_institution_name(cls, v: str) -> str:
        if not v:
            raise ValueError("institutionName is required.")
        if len(v) > MAX_INSTITUTION_NAME:
            raise ValueError(f"institutionName must be {MAX_INSTITUTION_NAME} characters or fewer.")
        return v

    @field_validator("institution_country")
    @classmethod
    def validate_country(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if len(v) != 2 or not v.isalpha():
            raise ValueError("institutionCountry must be a two-letter country code.")
        return v.upper()

    @field_validator("institution_website")
    @classmethod
    def validate_website(cls, v: str | None) -> str | None:
        if v and not is_valid_url(v):
            raise ValueError("institutionWebsite must be a valid URL.")
        return v

    @field_validator("leadership_approach")
    @classmethod
    def validate_leadership(cls, v: str) -> str:
        if not v:
            raise ValueError("leadershipApproach is required.")
        if len(v) > MAX_TEXT_LENGTH:
            raise ValueError(f"leadershipApproach must be {MAX_TEXT_LENGTH} characters or fewer.")
        return v

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coerce_coordinate(cls, v: Any) -> float | None:
        return normalize_number(v)

    @field_validator("latitude")
    @classmethod
    def validate_latitude(cls, v: float | None) -> float | None:
        if v is not None and not -90 <= v <= 90:
            raise ValueError("latitude must be between -90 and 90.")
        return v

    @field_validator("longitude")
    @classmethod
    def validate_longitude(cls, v: float | None) -> float | None:
        if v is not None and not -180 <= v <= 180:
            raise ValueError("longitude must be between -180 and 180.")
        return v


def validation_messages(error: ValidationError) -> list[str]:
    """Flatten pydantic errors into the messages shown on the form."""
    return [e["msg"].removeprefix("Value error, ") for e in error.errors()]


@dataclass
class SubmissionResult:
    """What a front end should answer with."""
    status_code: int
    body: dict
    headers: dict[str, str] = field(default_factory=dict)


Geocoder = Callable[..., GeocodeOutcome]


class SubmissionService:
    """Validates and stores community submissions."""

    def __init__(self, session: Session, geocoder: Geocoder | None = None):
        self.session = session
        self.geocoder = geocoder or geocode_location

    def _log(self, ip: str, user_agent: str | None, success: bool, error: str | None = None):
        log_request(self.session, ip, REQUEST_SUBMISSION, success, user_agent=user_agent, error=error)
        self.session.commit()

    def submit(self, payload: Any, ip: str, user_agent: str | None = None) -> SubmissionResult:
        """
        Handle one submission.

        `payload` is the decoded form (a dict) or the raw JSON body.
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError:
                payload = None
        if not isinstance(payload, dict):
            self._log(ip, user_agent, False, "invalid_json")
            return SubmissionResult(400, {"error": "Invalid JSON payload"})

        decision = check_rate_limit(self.session, ip, REQUEST_SUBMISSION)
        if not decision.allowed:
            self._log(ip, user_agent, False, "rate_limited")
            return SubmissionResult(
                429,
                {"error": "Too many submissions. Please try again later.", "retry_after": decision.retry_after},
                headers={"Retry-After": str(decision.retry_after)},
            )

        errors: list[str] = []
        form: SubmissionCreate | None = None
        try:
            form = SubmissionCreate.model_validate(payload)
        except ValidationError as e:
            errors.extend(validation_messages(e))

        institution_id = clean_text(payload.get("institutionId"))
        duplicate_of_id = clean_text(payload.get("duplicateOfId"))

        linked = None
        if institution_id:
            linked = self.session.get(Institution, institution_id)
            if linked is None:
                errors.append("institutionId does not match an existing institution.")

        duplicate = None
        if duplicate_of_id:
            duplicate = self.session.get(Institution, duplicate_of_id)
            if duplicate is None:
                errors.append("duplicateOfId does not match an existing institution.")

        if errors or form is None:
            self._log(ip, user_agent, False, "validation_failed")
            return SubmissionResult(422, {"errors": errors})

        country_code = form.institution_country
        if not country_code and linked is not None and linked.country:
            country_code = linked.country

        geocode_status, geocode_response, resolved_lat, resolved_lng = self._resolve_location(
            form, linked, country_code
        )

        location_query = ", ".join(p for p in (form.institution_city, form.institution_country_name) if p)

        submission = Submission(
            contact_name=form.contact_name,
            contact_email=form.contact_email,
            submitter_type=form.submitter_type,
            institution_name=form.institution_name,
            institution_country=country_code,
            institution_country_name=form.institution_country_name,
            institution_city=form.institution_city,
            location_query=location_query or None,
            institution_website=form.institution_website,
            leadership_approach=form.leadership_approach,
            latitude=form.latitude,
            longitude=form.longitude,
            resolved_latitude=resolved_lat,
            resolved_longitude=resolved_lng,
            geocode_status=geocode_status,
            geocode_response=geocode_response,
            submission_ip=ip,
            status="pending",
            institution_id=linked.id if linked is not None else None,
            duplicate_of_id=duplicate.id if duplicate is not None else None,
        )

        try:
            self.session.add(submission)
            self.session.flush()
            submission_id = submission.id
            log_request(self.session, ip, REQUEST_SUBMISSION, True, user_agent=user_agent)
            self.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save submission: {e}")
            self.session.rollback()
            self._log(ip, user_agent, False, "save_failed")
            return SubmissionResult(500, {"error": "Unable to store submission at this time."})

        logger.info(f"New submission: {form.institution_name} (ID: {submission_id}, geocode: {geocode_status})")
        return SubmissionResult(
            201,
            {
                "message": "Thank you! Your leadership approach has been recorded and is awaiting review.",
                "submission_id": submission_id,
                "geocode_status": geocode_status,
            },
        )

    def _resolve_location(
        self, form: SubmissionCreate, linked: Institution | None, country_code: str | None
    ) -> tuple[str, Any, float | None, float | None]:
        """Linked institution first, then geocoding, then what was submitted."""
        status = "skipped"
        response = None
        lat = lng = None

        if linked is not None and has_coordinates(linked.lat, linked.lng):
            status = "linked"
            lat, lng = linked.lat, linked.lng
            response = {"source": "institution"}
        else:
            outcome = self.geocoder(
                institution_name=form.institution_name,
                institution_city=form.institution_city,
                country_name=form.institution_country_name,
                country_code=country_code,
            )
            status = outcome.status
            response = outcome.raw
            if outcome.ok:
                lat, lng = outcome.latitude, outcome.longitude

        if lat is None and form.latitude is not None:
            lat = form.latitude
        if lng is None and form.longitude is not None:
            lng = form.longitude
        if status == "skipped" and lat is not None and lng is not None:
            status = "manual"
        return status, response, lat, lng


def pick_submission_coordinates(submission: Submission) -> tuple[float, float] | None:
    """Resolved coordinates when known, otherwise the submitted ones."""
    lat = submission.resolved_latitude if submission.resolved_latitude is not None else submission.latitude
    lng = submission.resolved_longitude if submission.resolved_longitude is not None else submission.longitude
    if not has_coordinates(lat, lng):
        return None
    return lat, lng


# =============================================================================
# Moderation
# =============================================================================

@dataclass
class ReviewQueue:
    pending: list[Submission]
    approved: list[Submission]
    rejected: list[Submission]


class ModerationService:
    """Admin actions on submissions."""

    def __init__(self, session: Session):
        self.session = session

    def _get(self, submission_id: int) -> Submission:
        submission = self.session.get(Submission, submission_id)
        if submission is None:
            raise ModerationError(f"Submission {submission_id} not found")
        return submission

    def update_status(
        self,
        submission_id: int,
        action: str,
        reviewer: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Submission:
        """Approve, reject or reset a submission."""
        submission = self._get(submission_id)
        reviewer = reviewer or settings.admin.user
        now = now or datetime.utcnow()
        notes = clean_text(notes) or None

        if action == "approve":
            submission.status = "approved"
            submission.approved_by = reviewer
            submission.approved_at = now
            submission.reviewed_at = now
            submission.rejection_reason = None
            submission.rejected_at = None
        elif action == "reject":
            submission.status = "rejected"
            submission.rejection_reason = notes
            submission.rejected_at = now
            submission.reviewed_at = now
            submission.approved_by = None
            submission.approved_at = None
        elif action == "reset":
            submission.status = "pending"
            submission.approved_by = None
            submission.approved_at = None
            submission.rejected_at = None
            submission.rejection_reason = None
            submission.reviewed_at = None
        else:
            raise ModerationError(f"Unknown action: {action}")

        self.session.commit()
        logger.info(f"Submission {submission_id}: {action} by {reviewer}")
        return submission

    def update_link(self, submission_id: int, mode: str, action: str, value: str | None = None) -> Submission:
        """Assign or clear the linked institution or the duplicate-of institution."""
        columns = {"institution": "institution_id", "duplicate": "duplicate_of_id"}
        if mode not in columns:
            raise ModerationError(f"Unknown mode: {mode}")

        submission = self._get(submission_id)
        if action == "assign":
            value = clean_text(value)
            if not value:
                raise ModerationError(f"Institution ID is required for {mode} link")
            institution = self.session.get(Institution, value)
            if institution is None:
                raise ModerationError(f"Institution {value} not found")
            setattr(submission, columns[mode], institution.id)
        elif action == "clear":
            setattr(submission, columns[mode], None)
        else:
            raise ModerationError(f"Unknown action for {mode} link: {action}")

        self.session.commit()
        return submission

    def delete(self, submission_id: int) -> None:
        submission = self._get(submission_id)
        self.session.delete(submission)
        self.session.commit()
        logger.info(f"Submission {submission_id} deleted")

    def review_queue(self, recent_limit: int = RECENT_REVIEWED_LIMIT) -> ReviewQueue:
        """Pending submissions plus the most recently reviewed ones."""

        def by_status(status: str, order, limit: int | None = None) -> list[Submission]:
            stmt = (
                select(Submission)
                .where(Submission.status == status)
                .options(selectinload(Submission.institution), selectinload(Submission.duplicate_of))
                .order_by(order, Submission.id.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            return list(self.session.scalars(stmt))

        return ReviewQueue(
            pending=by_status("pending", Submission.created_at.desc()),
            approved=by_status("approved", Submission.updated_at.desc(), recent_limit),
            rejected=by_status("rejected", Submission.updated_at.desc(), recent_limit),
        )
