# Reverse index: email digest -> survey ids upgraded under that address.
import re

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import InvalidEmail
from models import EmailSurvey
from tokens import hash_token

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email) -> str:
    """Trim and lower-case an address.

    Raises:
        InvalidEmail: If the address is not syntactically valid.
    """
    value = (email or "").strip().lower() if isinstance(email, str) else ""
    if not value or len(value) > 320 or not EMAIL_RE.match(value):
        raise InvalidEmail(field="email")
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise InvalidEmail(field="email")
    return value


def hash_email(email: str, salt: str) -> str:
    return hash_token(normalize_email(email), salt)


class EmailSurveyDirectory:
    def __init__(self, db: Session):
        self.db = db

    def record(self, email_hash: str, survey_id: str, commit: bool = False) -> bool:
        """Append (email_hash, survey_id); a duplicate is a no-op.

        With ``commit=False`` the row joins the caller's open transaction.

        Returns:
            bool: True if a new mapping was added.
        """
        exists = self.db.execute(
            select(EmailSurvey.id).where(EmailSurvey.email_hash == email_hash, EmailSurvey.survey_id == survey_id)
        ).first()
        if exists:
            return False
        self.db.add(EmailSurvey(email_hash=email_hash, survey_id=survey_id))
        if not commit:
            self.db.flush()
            return True
        try:
            self.db.commit()
        except IntegrityError:
            # a concurrent writer recorded the same pair
            self.db.rollback()
            return False
        return True

    def lookup(self, email_hash: str) -> list[str]:
        rows = self.db.execute(
            select(EmailSurvey.survey_id).where(EmailSurvey.email_hash == email_hash).order_by(EmailSurvey.id)
        ).scalars().all()
        return list(rows)

    def count(self, email_hash: str) -> int:
        return self.db.execute(
            select(func.count(EmailSurvey.id)).where(EmailSurvey.email_hash == email_hash)
        ).scalar_one()
