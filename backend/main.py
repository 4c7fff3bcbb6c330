import logging
from typing import Optional
from fastapi import FastAPI, Depends, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import select

import pandas as pd

from assessment import AssessmentSpec, get_assessment_spec
from benchmarks import benchmark_averages
from config import ORIGINS, LOG_LEVEL, RATE_LIMIT_SESSION_READ
from db import Base, engine, get_db
from email_service import EmailSender, get_email_sender
from errors import ServiceError, RateLimited, InvalidAnswers, MissingToken
from lifecycle import SurveyService
from magic_link import MagicLinkAuthenticator, SessionScope
from models import Survey, SurveyResults
from rate_limit import RateLimiter
from schemas import (
    SurveyCreate, SurveyComplete, SurveyUpgrade, ScorePreview, MagicLinkRequest, MagicLinkVerify,
)
from scoring import (
    compute_results, validate_answers, calculate_progress, analyze_gaps, improvement_priorities,
    target_overall_score, maturity_progression,
)
from security import verify_admin, require_token, bearer_token, caller_ip

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Digital Maturity Assessment API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

# ------------------------
# Error mapping
# ------------------------
@app.exception_handler(ServiceError)
def handle_service_error(request: Request, exc: ServiceError):
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "code": "INTERNAL_ERROR", "kind": "Internal"})

# ------------------------
# Dependencies
# ------------------------
_limiter = RateLimiter()

def get_rate_limiter() -> RateLimiter:
    """One limiter per process. Tests override this to get a fresh one."""
    return _limiter

def get_survey_service(
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    spec: AssessmentSpec = Depends(get_assessment_spec),
    sender: EmailSender = Depends(get_email_sender),
) -> SurveyService:
    return SurveyService(db, limiter, spec, email_sender=sender)

def get_magic_link_authenticator(
    db: Session = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
    sender: EmailSender = Depends(get_email_sender),
) -> MagicLinkAuthenticator:
    return MagicLinkAuthenticator(db, limiter, sender)

def get_session_scope(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    limiter: RateLimiter = Depends(get_rate_limiter),
    auth: MagicLinkAuthenticator = Depends(get_magic_link_authenticator),
) -> SessionScope:
    """Resolve the magic-link session bearer into its survey scope."""
    limiter.enforce(f"session:{caller_ip(request)}", *RATE_LIMIT_SESSION_READ)
    token = bearer_token(authorization)
    if not token:
        raise MissingToken()
    return auth.open_session(token)

@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Assessment definition and stateless scoring
# ------------------------
@app.get("/api/assessment")
def get_assessment(spec: AssessmentSpec = Depends(get_assessment_spec)):
    return spec.model_dump()

@app.post("/api/assessment/score")
def score_preview(payload: ScorePreview, spec: AssessmentSpec = Depends(get_assessment_spec)):
    """Score a (possibly partial) answer set without storing anything.

    Returns:
        dict: {"results", "progress", "gaps", "priorities", "progression", "missing"}

    Raises:
        InvalidAnswers: Unknown question ids or answer types that do not match.
    """
    problems = validate_answers(spec, payload.answers)
    if problems["unknown"] or problems["mismatched"]:
        raise InvalidAnswers("Answers reference unknown questions or the wrong question type",
                             fields=problems["unknown"] + problems["mismatched"])
    results = compute_results(spec, payload.answers)
    return {
        "results": results.to_dict(),
        "progress": calculate_progress(spec, payload.answers),
        "gaps": analyze_gaps(results.dimensions),
        "priorities": improvement_priorities(results.dimensions),
        "progression": maturity_progression(results.overall, target_overall_score(results.dimensions), spec.bands),
        "missing": problems["missing"],
    }

@app.get("/api/benchmarks/averages")
def benchmarks(
    sector: Optional[str] = Query(default=None),
    company_size: Optional[str] = Query(default=None),
    region: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Average overall score of completed surveys per requested peer group.

    Returns:
        dict: {"sector"?, "company_size"?, "region"?: {"average", "count"}}
    """
    return benchmark_averages(db, sector=sector, company_size=company_size, region=region)

# ------------------------
# Survey lifecycle (retrieval-token holders)
# ------------------------
@app.post("/api/surveys", status_code=201)
def create_survey(payload: SurveyCreate, request: Request, service: SurveyService = Depends(get_survey_service)):
    """Create an anonymous survey.

    Returns:
        dict: {"survey_id", "retrieval_token"}; the token is shown only once.
    """
    survey_id, token = service.create(
        payload.company_details.model_dump(exclude_none=True),
        language=payload.language,
        survey_version=payload.survey_version,
        caller=caller_ip(request),
    )
    return {"survey_id": survey_id, "retrieval_token": token}

@app.post("/api/surveys/{survey_id}/complete")
def complete_survey(
    survey_id: str,
    payload: SurveyComplete,
    request: Request,
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
    service: SurveyService = Depends(get_survey_service),
):
    """Submit answers once; results are computed server-side.

    Raises:
        SurveyNotFound (404), InvalidToken/TokenRevoked (403),
        AlreadyCompleted (409), InvalidAnswers/ResultsMismatch (400), RateLimited (429).
    """
    return service.complete(
        survey_id,
        require_token(authorization, token),
        payload.answers,
        results=payload.results,
        caller=caller_ip(request),
    )

@app.post("/api/surveys/{survey_id}/upgrade")
def upgrade_survey(
    survey_id: str,
    payload: SurveyUpgrade,
    request: Request,
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
    service: SurveyService = Depends(get_survey_service),
):
    return service.upgrade(survey_id, require_token(authorization, token), payload.user_details, caller=caller_ip(request))

@app.get("/api/surveys/{survey_id}/results")
def survey_results(
    survey_id: str,
    request: Request,
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
    service: SurveyService = Depends(get_survey_service),
):
    """Public results, or {"status": "pending", "results": null} before completion."""
    return service.retrieve_results(survey_id, require_token(authorization, token), caller=caller_ip(request))

# ------------------------
# Magic links and session reads
# ------------------------
@app.post("/api/auth/request-magic-link")
def request_magic_link(payload: MagicLinkRequest, auth: MagicLinkAuthenticator = Depends(get_magic_link_authenticator)):
    result = auth.request(payload.email)
    return {"ok": True, "survey_count": result["survey_count"], "expires_at": result["expires_at"]}

@app.post("/api/auth/verify-magic-link")
def verify_magic_link(
    payload: MagicLinkVerify,
    request: Request,
    auth: MagicLinkAuthenticator = Depends(get_magic_link_authenticator),
    service: SurveyService = Depends(get_survey_service),
):
    """Redeem a magic link.

    Returns:
        dict: {"session_token", "survey_ids", "surveys", "expires_at"}
    """
    session = auth.verify(payload.token, payload.email, caller=caller_ip(request))
    scope = auth.open_session(session["session_token"])
    return {**session, "surveys": service.list_for_session(scope)}

@app.get("/api/my-surveys")
def my_surveys(scope: SessionScope = Depends(get_session_scope), service: SurveyService = Depends(get_survey_service)):
    return {"surveys": service.list_for_session(scope), "expires_at": scope.expires_at.isoformat()}

@app.get("/api/my-surveys/{survey_id}")
def my_survey_detail(survey_id: str, scope: SessionScope = Depends(get_session_scope),
                     service: SurveyService = Depends(get_survey_service)):
    return service.fetch_for_session(scope, survey_id)

# ------------------------
# Admin
# ------------------------
@app.post("/admin/surveys/{survey_id}/revoke", dependencies=[Depends(verify_admin)])
def revoke_survey(survey_id: str, service: SurveyService = Depends(get_survey_service)):
    """Permanently block token access to a survey (data is kept).

    Returns:
        dict: {"survey_id", "revoked": True, "revoked_at"}

    Raises:
        SurveyNotFound: 404 if survey not found.
    """
    return service.revoke(survey_id)

@app.post("/admin/magic-links/cleanup", dependencies=[Depends(verify_admin)])
def cleanup_magic_links(auth: MagicLinkAuthenticator = Depends(get_magic_link_authenticator)):
    return {"deleted": auth.cleanup_expired()}

@app.post("/admin/magic-links/invalidate", dependencies=[Depends(verify_admin)])
def invalidate_magic_links(payload: MagicLinkRequest, auth: MagicLinkAuthenticator = Depends(get_magic_link_authenticator)):
    return {"invalidated": auth.invalidate_for_email(payload.email)}

@app.get("/admin/surveys/export.csv", dependencies=[Depends(verify_admin)])
def export_csv(db: Session = Depends(get_db)):
    """Export completed surveys with overall and per-dimension scores as CSV.

    Scores are rounded to one decimal here; stored values keep full precision.
    No private details are included.

    Returns:
        Response: text/csv attachment `surveys_export.csv`.
    """
    q = select(Survey.id.label("survey_id"), Survey.state, Survey.survey_version, Survey.language, Survey.sector,
               Survey.created_at, Survey.completed_at, Survey.upgraded_at, Survey.token_revoked,
               Survey.overall_score).where(Survey.is_completed == True).order_by(Survey.completed_at, Survey.id)  # noqa: E712
    df = pd.read_sql(q, db.bind)

    dims = {
        row.survey_id: {f"dimension_{d['id']}": d["score"] for d in row.dimensions}
        for row in db.execute(select(SurveyResults.survey_id, SurveyResults.dimensions))
    }
    score_cols = ["overall_score"]
    if dims and not df.empty:
        dim_df = pd.DataFrame.from_dict(dims, orient="index")
        df = df.join(dim_df, on="survey_id")
        score_cols += list(dim_df.columns)
    df[score_cols] = df[score_cols].round(1)

    csv_bytes = df.to_csv(index=False).encode("utf-8")
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": "attachment; filename=surveys_export.csv"})
