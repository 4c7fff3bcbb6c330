# Outbound email: magic links and retrieval confirmations via the Resend HTTP API.
import logging
from datetime import datetime
from urllib.parse import urlencode

import requests

from config import RESEND_API_KEY, RESEND_API_URL, EMAIL_FROM, PUBLIC_BASE_URL, EMAIL_TIMEOUT_SECONDS
from errors import EmailDeliveryFailed

logger = logging.getLogger(__name__)


def magic_link_url(email: str, token: str) -> str:
    return f"{PUBLIC_BASE_URL}/auth/verify?{urlencode({'token': token, 'email': email})}"


def retrieval_url(survey_id: str, token: str) -> str:
    return f"{PUBLIC_BASE_URL}/results/{survey_id}?{urlencode({'token': token})}"


class EmailSender:
    """Interface for the delivery collaborator. Methods raise EmailDeliveryFailed."""

    def send_magic_link(self, to: str, token: str, expiry: datetime, survey_count: int) -> None:
        raise NotImplementedError

    def send_retrieval_confirmation(self, to: str, survey_id: str, token: str) -> None:
        raise NotImplementedError


class ResendEmailSender(EmailSender):
    def __init__(self, api_key: str, api_url: str = RESEND_API_URL, sender: str = EMAIL_FROM,
                 timeout: float = EMAIL_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.api_url = api_url
        self.sender = sender
        self.timeout = timeout

    def _send(self, to: str, subject: str, html: str, text: str) -> None:
        try:
            response = requests.post(
                self.api_url,
                json={"from": self.sender, "to": [to], "subject": subject, "html": html, "text": text},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error("Email delivery failed: %s", e)
            raise EmailDeliveryFailed()

    def send_magic_link(self, to, token, expiry, survey_count):
        url = magic_link_url(to, token)
        plural = "survey" if survey_count == 1 else "surveys"
        subject = "Your link to your digital maturity results"
        text = (
            f"You have {survey_count} {plural} linked to this address.\n\n"
            f"Open your results: {url}\n\n"
            f"The link is valid until {expiry.strftime('%Y-%m-%d %H:%M UTC')}."
        )
        html = (
            f"<p>You have {survey_count} {plural} linked to this address.</p>"
            f'<p><a href="{url}">Open your results</a></p>'
            f"<p>The link is valid until {expiry.strftime('%Y-%m-%d %H:%M UTC')}.</p>"
        )
        self._send(to, subject, html, text)

    def send_retrieval_confirmation(self, to, survey_id, token):
        url = retrieval_url(survey_id, token)
        subject = "Your digital maturity assessment"
        text = f"Thank you for completing the assessment.\n\nYour results are available at: {url}"
        html = f'<p>Thank you for completing the assessment.</p><p><a href="{url}">View your results</a></p>'
        self._send(to, subject, html, text)


class LogEmailSender(EmailSender):
    """Used when no API key is configured: logs that a message would be sent."""

    def send_magic_link(self, to, token, expiry, survey_count):
        logger.info("Email disabled: magic link for %s surveys to *@%s", survey_count, to.rsplit("@", 1)[-1])

    def send_retrieval_confirmation(self, to, survey_id, token):
        logger.info("Email disabled: retrieval confirmation for survey %s", survey_id)


def get_email_sender() -> EmailSender:
    """FastAPI dependency: the configured delivery collaborator."""
    if RESEND_API_KEY:
        return ResendEmailSender(RESEND_API_KEY)
    return LogEmailSender()
