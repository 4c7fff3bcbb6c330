# Peer averages of overall scores for comparing one result against similar companies.
import logging
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import BENCHMARK_SAMPLE_LIMIT
from db import run_with_retries
from errors import Transient
from models import Survey

logger = logging.getLogger(__name__)


def _group_column(group: str):
    if group == "sector":
        return Survey.sector
    return Survey.company_details[group].as_string()


def group_average(db: Session, group: str, value: str, limit: int = BENCHMARK_SAMPLE_LIMIT) -> dict:
    """Mean overall score of the most recent completed surveys sharing ``value``.

    Revoked surveys are left out. Returns {"average": float or None, "count": int}.
    """
    sample = (
        select(Survey.overall_score)
        .where(
            Survey.is_completed == True,  # noqa: E712
            Survey.token_revoked == False,  # noqa: E712
            Survey.overall_score.is_not(None),
            _group_column(group) == value,
        )
        .order_by(Survey.completed_at.desc(), Survey.id)
        .limit(limit)
        .subquery()
    )
    avg, count = db.execute(select(func.avg(sample.c.overall_score), func.count())).one()
    return {"average": float(avg) if avg is not None else None, "count": count}


def benchmark_averages(
    db: Session,
    sector: Optional[str] = None,
    company_size: Optional[str] = None,
    region: Optional[str] = None,
    limit: int = BENCHMARK_SAMPLE_LIMIT,
) -> dict:
    """Averages for each requested peer group.

    Only groups that were asked for and have at least one completed survey
    appear in the result.

    Raises:
        Transient: Storage stayed unavailable after retries.
    """
    requested = {"sector": sector, "company_size": company_size, "region": region}
    out = {}
    for group, value in requested.items():
        if not value:
            continue
        try:
            stats = run_with_retries(db, lambda: group_average(db, group, value, limit))
        except OperationalError:
            logger.error("Benchmark query for %s failed", group)
            raise Transient()
        if stats["count"]:
            out[group] = stats
    return out
