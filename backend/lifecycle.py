"""Survey lifecycle: create -> completed -> upgraded (T1), with revocation as an overlay.

Every token-authenticated transition checks, in order: rate limit, survey
exists, token verifies, token not revoked, then the transition's own state
precondition. A failed check raises a specific ``ServiceError`` and writes
nothing. ``complete`` and ``upgrade`` apply their survey update and
sub-document inserts in a single session transaction.
"""
import logging
import math
import uuid
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

import analytics
from assessment import AssessmentSpec
from config import (
    TOKEN_SALT, DB_WRITE_RETRIES, DEFAULT_POLICY_VERSION, SUPPORTED_LANGUAGES, SUPPORTED_SURVEY_VERSIONS,
    RATE_LIMIT_CREATE, RATE_LIMIT_COMPLETE, RATE_LIMIT_UPGRADE, RATE_LIMIT_RETRIEVE,
)
from db import now_utc, as_utc, run_with_retries
from directory import EmailSurveyDirectory, normalize_email, hash_email
from email_service import EmailSender
from errors import (
    ServiceError, SurveyNotFound, InvalidToken, TokenRevoked, AlreadyCompleted, AlreadyUpgraded,
    SurveyNotCompleted, SurveyOutOfScope, InvalidAnswers, ResultsMismatch, InvalidCompanyDetails,
    ValidationFailed, EmailDeliveryFailed, Transient,
)
from models import Survey, SurveyAnswers, SurveyResults, SurveyPrivateDetails, STATE_EXPANDED
from rate_limit import RateLimiter
from scoring import compute_results, validate_answers
from tokens import create_retrieval_token, verify_token

logger = logging.getLogger(__name__)

SURVEY_ID_LENGTH = 10
COMPANY_SIZES = ("micro", "small", "medium", "large")
# submitted overall may be rounded for display by the client
RESULTS_TOLERANCE = 0.05

# NACE section letter -> simplified sector
NACE_SECTORS = {
    "C": "manufacturing",
    "G": "retail",
    "I": "services", "J": "services", "K": "services", "L": "services",
    "M": "services", "N": "services", "R": "services", "S": "services",
    "O": "government", "U": "government",
    "P": "education",
    "Q": "healthcare",
}


def sector_for_nace(nace: str) -> str:
    code = (nace or "").strip().upper()
    return NACE_SECTORS.get(code[:1], "other")


def validate_company_details(details: dict) -> dict:
    """Check the anonymous company profile and return a cleaned copy.

    Raises:
        InvalidCompanyDetails: Names the first offending field.
    """
    cleaned = {}
    for key, value in details.items():
        if isinstance(value, str):
            value = value.strip()
            if "@" in value:
                raise InvalidCompanyDetails("Company details must not contain email addresses", field=key)
        cleaned[key] = value
    for required in ("company_name", "nace", "region"):
        if not cleaned.get(required):
            raise InvalidCompanyDetails(f"{required} is required", field=required)
    if cleaned.get("company_size") not in COMPANY_SIZES:
        raise InvalidCompanyDetails("company_size must be one of micro, small, medium, large", field="company_size")
    return cleaned


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


class SurveyService:
    def __init__(
        self,
        db: Session,
        limiter: RateLimiter,
        spec: AssessmentSpec,
        directory: Optional[EmailSurveyDirectory] = None,
        recorder: Optional[analytics.AnalyticsRecorder] = None,
        email_sender: Optional[EmailSender] = None,
        salt: str = TOKEN_SALT,
        clock: Callable = now_utc,
        write_retries: int = DB_WRITE_RETRIES,
    ):
        self.db = db
        self.limiter = limiter
        self.spec = spec
        self.directory = directory or EmailSurveyDirectory(db)
        self.recorder = recorder or analytics.AnalyticsRecorder(db)
        self.email_sender = email_sender
        self.salt = salt
        self.clock = clock
        self.write_retries = write_retries

    # ------------------------
    # helpers
    # ------------------------
    def _write(self, transition: Callable, label: str):
        """Run a write transition, re-running it whole on transient storage errors.

        Each attempt re-reads the survey and re-checks every precondition,
        so a retry can never resubmit a write that a previous attempt committed.
        """
        attempts = self.write_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return transition()
            except ServiceError:
                self.db.rollback()
                raise
            except OperationalError:
                self.db.rollback()
                if attempt == attempts:
                    logger.error("%s failed after %d attempts", label, attempts)
                    raise Transient()
                logger.warning("%s hit a transient storage error (attempt %d/%d), retrying", label, attempt, attempts)
        raise Transient()

    def _read(self, fn: Callable):
        try:
            return run_with_retries(self.db, fn)
        except OperationalError:
            raise Transient()

    def _authorize(self, survey_id: str, token) -> Survey:
        """Load a survey and check its retrieval token.

        The token is verified before the revocation flag is consulted, so a
        caller who does not hold the token cannot learn whether it was revoked.
        """
        survey = self.db.get(Survey, survey_id, populate_existing=True)
        if survey is None:
            raise SurveyNotFound()
        if not verify_token(token, survey.token_hash, self.salt):
            raise InvalidToken()
        if survey.token_revoked:
            raise TokenRevoked()
        return survey

    def metadata(self, survey: Survey) -> dict:
        """Non-sensitive survey fields. The token digest never leaves the service."""
        return {
            "survey_id": survey.id,
            "state": survey.state,
            "survey_version": survey.survey_version,
            "language": survey.language,
            "company_details": survey.company_details,
            "sector": survey.sector,
            "created_at": _iso(survey.created_at),
            "completed_at": _iso(survey.completed_at),
            "upgraded_at": _iso(survey.upgraded_at),
            "overall_score": survey.overall_score,
            "is_completed": survey.is_completed,
            "has_results": survey.has_results,
            "has_expanded_access": survey.has_expanded_access,
        }

    def public_view(self, survey: Survey, include_user_details: bool = True) -> dict:
        view = self.metadata(survey)
        if survey.has_results and survey.results is not None:
            view["status"] = "completed"
            view["results"] = {
                "dimensions": survey.results.dimensions,
                "overall": survey.results.overall,
                "classification": survey.results.classification,
            }
        else:
            view["status"] = "pending"
            view["results"] = None
        if include_user_details and survey.has_expanded_access and survey.private_details is not None:
            pd = survey.private_details
            view["user_details"] = {
                "email_domain": pd.email_domain,
                "created_at": _iso(pd.created_at),
                "consent_accepted_at": _iso(pd.consent_accepted_at),
                "policy_version": pd.policy_version,
            }
        return view

    # ------------------------
    # transitions
    # ------------------------
    def create(self, company_details: dict, language: str = "no", survey_version: str = "v1.0",
               caller: str = "unknown") -> tuple[str, str]:
        """Create a baseline (T0) survey.

        Args:
            company_details (dict): Anonymous company profile.
            language (str): UI language of the respondent.
            survey_version (str): Assessment version answered.
            caller (str): Client address used for rate limiting.

        Returns:
            tuple[str, str]: (survey_id, plaintext retrieval token). The token is
            not stored and cannot be recovered later.

        Raises:
            RateLimited, ValidationFailed, Transient.
        """
        self.limiter.enforce(f"create:{caller}", *RATE_LIMIT_CREATE)
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationFailed(f"Unsupported language {language!r}", field="language")
        if survey_version not in SUPPORTED_SURVEY_VERSIONS:
            raise ValidationFailed(f"Unsupported survey version {survey_version!r}", field="survey_version")
        details = validate_company_details(company_details)

        def transition():
            for _ in range(5):
                survey_id = uuid.uuid4().hex[:SURVEY_ID_LENGTH]
                token, token_hash, created_at = create_retrieval_token(self.salt)
                self.db.add(Survey(
                    id=survey_id,
                    survey_version=survey_version,
                    language=language,
                    company_details=details,
                    sector=sector_for_nace(details["nace"]),
                    created_at=created_at,
                    token_hash=token_hash,
                    token_created_at=created_at,
                ))
                try:
                    self.db.commit()
                    return survey_id, token
                except IntegrityError:
                    self.db.rollback()
                    continue
            raise Transient("Failed to allocate a unique survey id")

        survey_id, token = self._write(transition, "create")
        logger.info("Survey %s created", survey_id)
        self.recorder.record(analytics.SURVEY_CREATED, survey_id, language=language, sector=sector_for_nace(details["nace"]))
        return survey_id, token

    def complete(self, survey_id: str, token, answers: dict, results=None, caller: str = "unknown") -> dict:
        """Record answers and server-computed results, exactly once.

        Args:
            survey_id (str): Survey id.
            token (str): Plaintext retrieval token.
            answers (dict): question_id -> answer model.
            results: Optional client-side computation; its ``overall`` must
                agree with the server's.
            caller (str): Client address used for rate limiting.

        Returns:
            dict: {"survey_id", "completed_at", "overall_score", "classification", "results"}

        Raises:
            SurveyNotFound, InvalidToken, TokenRevoked, AlreadyCompleted,
            InvalidAnswers, ResultsMismatch, RateLimited, Transient.
        """
        self.limiter.enforce(f"complete:{caller}:{survey_id}", *RATE_LIMIT_COMPLETE)

        def transition():
            survey = self._authorize(survey_id, token)
            if survey.is_completed:
                raise AlreadyCompleted()

            problems = validate_answers(self.spec, answers)
            if problems["unknown"] or problems["mismatched"]:
                raise InvalidAnswers("Answers reference unknown questions or the wrong question type",
                                     fields=problems["unknown"] + problems["mismatched"])
            if problems["missing"]:
                raise InvalidAnswers("Required questions are unanswered", fields=problems["missing"])

            computed = compute_results(self.spec, answers)
            if results is not None and not math.isclose(results.overall, computed.overall, abs_tol=RESULTS_TOLERANCE):
                raise ResultsMismatch(field="results.overall")

            now = self.clock()
            res = self.db.execute(
                update(Survey)
                .where(Survey.id == survey_id, Survey.is_completed == False)  # noqa: E712
                .values(completed_at=now, overall_score=computed.overall, is_completed=True, has_results=True)
            )
            if res.rowcount != 1:
                raise AlreadyCompleted()
            payload = computed.to_dict()
            self.db.add(SurveyAnswers(
                survey_id=survey_id,
                answers={qid: a.model_dump() for qid, a in answers.items()},
                submitted_at=now,
            ))
            self.db.add(SurveyResults(
                survey_id=survey_id,
                dimensions=payload["dimensions"],
                overall=payload["overall"],
                classification=payload["classification"],
                computed_at=now,
            ))
            self.db.commit()
            return {
                "survey_id": survey_id,
                "completed_at": _iso(now),
                "overall_score": computed.overall,
                "classification": payload["classification"],
                "results": payload,
            }

        receipt = self._write(transition, "complete")
        logger.info("Survey %s completed (overall %.1f)", survey_id, receipt["overall_score"])
        self.recorder.record(analytics.ASSESSMENT_COMPLETED, survey_id,
                             level=receipt["classification"]["level"])
        return receipt

    def upgrade(self, survey_id: str, token, user_details, caller: str = "unknown") -> dict:
        """Capture an email and move a completed survey to expanded access (T1).

        The survey update, the private details and the directory entry commit
        together. A confirmation email is sent afterwards; its failure is
        logged and does not undo the upgrade.

        Raises:
            SurveyNotFound, InvalidToken, TokenRevoked, SurveyNotCompleted,
            AlreadyUpgraded, InvalidEmail, RateLimited, Transient.
        """
        self.limiter.enforce(f"upgrade:{caller}:{survey_id}", *RATE_LIMIT_UPGRADE)

        def transition():
            survey = self._authorize(survey_id, token)
            if not survey.is_completed:
                raise SurveyNotCompleted()
            if survey.has_expanded_access:
                raise AlreadyUpgraded()
            email = normalize_email(user_details.email)

            now = self.clock()
            res = self.db.execute(
                update(Survey)
                .where(Survey.id == survey_id, Survey.has_expanded_access == False)  # noqa: E712
                .values(state=STATE_EXPANDED, has_expanded_access=True, upgraded_at=now)
            )
            if res.rowcount != 1:
                raise AlreadyUpgraded()
            self.db.add(SurveyPrivateDetails(
                survey_id=survey_id,
                email=email,
                email_domain=email.rsplit("@", 1)[1],
                contact_name=(user_details.contact_name or "").strip() or None,
                created_at=now,
                consent_accepted_at=now,
                policy_version=user_details.policy_version or DEFAULT_POLICY_VERSION,
            ))
            self.directory.record(hash_email(email, self.salt), survey_id)
            self.db.commit()
            return email, {"survey_id": survey_id, "upgraded_at": _iso(now), "has_expanded_access": True}

        email, receipt = self._write(transition, "upgrade")
        logger.info("Survey %s upgraded to expanded access", survey_id)
        self.recorder.record(analytics.SURVEY_UPGRADED, survey_id, email_domain=email.rsplit("@", 1)[1])
        if self.email_sender is not None:
            try:
                self.email_sender.send_retrieval_confirmation(email, survey_id, token)
            except EmailDeliveryFailed:
                logger.warning("Confirmation email for survey %s could not be sent", survey_id)
        return receipt

    def retrieve_results(self, survey_id: str, token, caller: str = "unknown") -> dict:
        """Public results, or a pending view when the survey is not completed yet.

        With expanded access only the non-identifying part of the private
        details is included (domain, consent time, policy version).
        """
        self.limiter.enforce(f"retrieve:{caller}:{survey_id}", *RATE_LIMIT_RETRIEVE)
        view = self._read(lambda: self.public_view(self._authorize(survey_id, token)))
        self.recorder.record(analytics.RESULTS_RETRIEVED, survey_id, status=view["status"])
        return view

    def revoke(self, survey_id: str) -> dict:
        """Permanently disable the survey's retrieval token. Idempotent."""
        def transition():
            survey = self.db.get(Survey, survey_id, populate_existing=True)
            if survey is None:
                raise SurveyNotFound()
            changed = False
            if not survey.token_revoked:
                survey.token_revoked = True
                survey.revoked_at = self.clock()
                self.db.commit()
                changed = True
            return changed, {"survey_id": survey_id, "revoked": True, "revoked_at": _iso(survey.revoked_at)}

        changed, receipt = self._write(transition, "revoke")
        if changed:
            logger.info("Survey %s token revoked", survey_id)
            self.recorder.record(analytics.SURVEY_REVOKED, survey_id)
        return receipt

    # ------------------------
    # magic-link session readers
    # ------------------------
    def list_for_session(self, scope) -> list[dict]:
        """Metadata for every survey named by the session, revoked ones excluded."""
        if not scope.survey_ids:
            return []

        def read():
            rows = self.db.execute(
                select(Survey).where(Survey.id.in_(scope.survey_ids)).order_by(Survey.created_at)
            ).scalars().all()
            return [self.metadata(s) for s in rows if not s.token_revoked]

        return self._read(read)

    def fetch_for_session(self, scope, survey_id: str) -> dict:
        """Metadata plus public results for one survey inside the session scope.

        Raises:
            SurveyOutOfScope: The id is not part of the session.
            SurveyNotFound, TokenRevoked.
        """
        if survey_id not in scope.survey_ids:
            raise SurveyOutOfScope()

        def read():
            survey = self.db.get(Survey, survey_id)
            if survey is None:
                raise SurveyNotFound()
            if survey.token_revoked:
                raise TokenRevoked()
            return self.public_view(survey, include_user_details=False)

        return self._read(read)
