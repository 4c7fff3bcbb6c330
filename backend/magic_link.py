"""Email-scoped access: magic links and the session capability they unlock.

A magic link is a one-hour bearer secret bound to an email digest. Redeeming
it yields a signed session token naming exactly the survey ids upgraded under
that email at redemption time; holders of the session may read (never
mutate) those surveys.
"""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, update, func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import analytics
from config import (
    TOKEN_SALT, SESSION_SECRET, MAGIC_LINK_TTL_SECONDS, SESSION_TTL_SECONDS, MAGIC_LINK_SINGLE_USE,
    RATE_LIMIT_MAGIC_REQUEST, RATE_LIMIT_MAGIC_VERIFY,
)
from db import now_utc, as_utc
from directory import EmailSurveyDirectory, normalize_email, hash_email
from email_service import EmailSender
from errors import (
    InvalidEmail, NoSurveysFound, InvalidMagicLink, MagicLinkExpired, MagicLinkUsed,
    InvalidSession, SessionExpired, Transient,
)
from models import MagicLink
from rate_limit import RateLimiter
from tokens import URLSafeSerializer, generate_token, hash_token, verify_token, load_with_expiry

logger = logging.getLogger(__name__)


def session_signer(secret: str = SESSION_SECRET) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key=secret, salt="magic-link-session")


@dataclass
class SessionScope:
    email_hash: str
    survey_ids: list
    expires_at: datetime


class MagicLinkAuthenticator:
    def __init__(
        self,
        db: Session,
        limiter: RateLimiter,
        email_sender: EmailSender,
        directory: Optional[EmailSurveyDirectory] = None,
        signer: Optional[URLSafeSerializer] = None,
        recorder: Optional[analytics.AnalyticsRecorder] = None,
        salt: str = TOKEN_SALT,
        link_ttl: int = MAGIC_LINK_TTL_SECONDS,
        session_ttl: int = SESSION_TTL_SECONDS,
        single_use: bool = MAGIC_LINK_SINGLE_USE,
        clock: Callable = now_utc,
    ):
        self.db = db
        self.limiter = limiter
        self.email_sender = email_sender
        self.directory = directory or EmailSurveyDirectory(db)
        self.signer = signer or session_signer()
        self.recorder = recorder or analytics.AnalyticsRecorder(db)
        self.salt = salt
        self.link_ttl = link_ttl
        self.session_ttl = session_ttl
        self.single_use = single_use
        self.clock = clock

    def request(self, email: str) -> dict:
        """Mint a magic link for an email with upgraded surveys and hand it to the sender.

        The link row is committed before delivery; a delivery failure is
        reported but leaves the stored link in place.

        Returns:
            dict: {"email", "survey_count", "expires_at"}

        Raises:
            InvalidEmail: Malformed address.
            RateLimited: Too many requests for this address.
            NoSurveysFound: No survey was ever upgraded under this address.
            EmailDeliveryFailed: The email collaborator rejected the message.
        """
        normalized = normalize_email(email)
        email_hash = hash_email(normalized, self.salt)
        self.limiter.enforce(f"magic-request:{email_hash}", *RATE_LIMIT_MAGIC_REQUEST)

        survey_ids = self.directory.lookup(email_hash)
        if not survey_ids:
            raise NoSurveysFound()

        token = generate_token()
        now = self.clock()
        expires_at = now + timedelta(seconds=self.link_ttl)
        self.db.add(MagicLink(
            token_hash=hash_token(token, self.salt),
            email_hash=email_hash,
            created_at=now,
            expires_at=expires_at,
            use_count=0,
        ))
        try:
            self.db.commit()
        except OperationalError:
            self.db.rollback()
            raise Transient()

        self.email_sender.send_magic_link(normalized, token, expires_at, len(survey_ids))
        logger.info("Magic link issued for %d surveys", len(survey_ids))
        self.recorder.record(analytics.MAGIC_LINK_REQUESTED, survey_count=len(survey_ids))
        return {"email": normalized, "survey_count": len(survey_ids), "expires_at": expires_at.isoformat()}

    def verify(self, token, email, caller: str = "unknown") -> dict:
        """Redeem a magic link for a signed session capability.

        Returns:
            dict: {"session_token", "survey_ids", "expires_at"}

        Raises:
            RateLimited, MagicLinkExpired, MagicLinkUsed, InvalidMagicLink.
        """
        self.limiter.enforce(f"magic-verify:{caller}", *RATE_LIMIT_MAGIC_VERIFY)
        try:
            email_hash = hash_email(email, self.salt)
        except InvalidEmail:
            raise InvalidMagicLink()
        if not token or not isinstance(token, str):
            raise InvalidMagicLink()

        try:
            token_hash = hash_token(token, self.salt)
        except ValueError:
            raise InvalidMagicLink()
        link = self.db.get(MagicLink, token_hash)
        if link is None or not verify_token(token, link.token_hash, self.salt):
            raise InvalidMagicLink()
        if not hmac.compare_digest(link.email_hash.encode("ascii"), email_hash.encode("ascii")):
            raise InvalidMagicLink()

        now = self.clock()
        if as_utc(link.expires_at) <= now:
            raise MagicLinkExpired()
        if self.single_use and link.use_count > 0:
            raise MagicLinkUsed()

        stmt = update(MagicLink).where(MagicLink.token_hash == link.token_hash)
        if self.single_use:
            stmt = stmt.where(MagicLink.use_count == 0)
        res = self.db.execute(stmt.values(
            use_count=MagicLink.use_count + 1,
            first_used_at=func.coalesce(MagicLink.first_used_at, now),
            last_used_at=now,
        ).execution_options(synchronize_session=False))
        if res.rowcount != 1:
            self.db.rollback()
            raise MagicLinkUsed()
        self.db.commit()

        survey_ids = self.directory.lookup(email_hash)
        expires_at = now + timedelta(seconds=self.session_ttl)
        session_token = self.signer.dumps({"sub": email_hash, "sids": survey_ids, "exp": int(expires_at.timestamp())})
        logger.info("Magic link redeemed for %d surveys", len(survey_ids))
        self.recorder.record(analytics.MAGIC_LINK_VERIFIED, survey_count=len(survey_ids))
        return {"session_token": session_token, "survey_ids": survey_ids, "expires_at": expires_at.isoformat()}

    def open_session(self, session_token) -> SessionScope:
        """Check a session token's signature and expiry.

        Raises:
            InvalidSession: Bad format, forged signature or malformed payload.
            SessionExpired: Past its ``exp``.
        """
        if not session_token or not isinstance(session_token, str):
            raise InvalidSession()
        try:
            data, expired = load_with_expiry(self.signer, session_token, self.clock())
        except ValueError:
            raise InvalidSession()
        if expired:
            raise SessionExpired()
        sub, sids = data.get("sub"), data.get("sids")
        if not isinstance(sub, str) or not isinstance(sids, list) or not all(isinstance(s, str) for s in sids):
            raise InvalidSession()
        return SessionScope(
            email_hash=sub,
            survey_ids=sids,
            expires_at=datetime.fromtimestamp(int(data["exp"]), tz=timezone.utc),
        )

    def cleanup_expired(self) -> int:
        """Delete links past their expiry. Returns the number removed."""
        res = self.db.execute(
            delete(MagicLink).where(MagicLink.expires_at <= self.clock()).execution_options(synchronize_session=False)
        )
        self.db.commit()
        if res.rowcount:
            logger.info("Removed %d expired magic links", res.rowcount)
        return res.rowcount

    def invalidate_for_email(self, email: str) -> int:
        """Expire every still-valid link issued to an address. Returns the number affected."""
        now = self.clock()
        res = self.db.execute(
            update(MagicLink)
            .where(MagicLink.email_hash == hash_email(email, self.salt), MagicLink.expires_at > now)
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return res.rowcount
