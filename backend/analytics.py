"""Best-effort event log.

Events are written in their own commit after the lifecycle transition has
committed. A failure is logged and dropped; it never surfaces to the caller.
"""
import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import AnalyticsEvent

logger = logging.getLogger(__name__)

SURVEY_CREATED = "survey_created"
ASSESSMENT_COMPLETED = "assessment_completed"
SURVEY_UPGRADED = "survey_upgraded"
RESULTS_RETRIEVED = "results_retrieved"
SURVEY_REVOKED = "survey_revoked"
MAGIC_LINK_REQUESTED = "magic_link_requested"
MAGIC_LINK_VERIFIED = "magic_link_verified"


class AnalyticsRecorder:
    def __init__(self, db: Session):
        self.db = db

    def record(self, event: str, survey_id=None, **properties) -> None:
        try:
            self.db.add(AnalyticsEvent(
                event=event,
                survey_id=survey_id,
                properties=json.dumps(properties, default=str) if properties else None,
            ))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Failed to record analytics event %s", event, exc_info=True)
