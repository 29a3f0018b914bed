"""Invitation email delivery.

Sending mail is best-effort: a failed send is logged and never undoes the
invitation (the inviter still gets the token in the HTTP response).
"""
import html
import logging
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import AwsSecrets, EmailSettings

logger = logging.getLogger(__name__)


def build_join_url(base: str, token: str) -> str:
    return f"{base.rstrip('/')}?token={token}"


def render_invite(room_name: str, inviter: str, join_url: str) -> tuple:
    """Return (subject, html_body, text_body) for an invitation email."""
    subject = f"{inviter} invited you to join {room_name} on FaceChat"
    text = (
        f"{inviter} has invited you to join the chat room \"{room_name}\".\n\n"
        f"Join here: {join_url}\n\n"
        "The link expires in a few days. Ask for a new invite if it has expired."
    )
    body = (
        f"<p><strong>{html.escape(inviter)}</strong> has invited you to join the chat room "
        f"<strong>{html.escape(room_name)}</strong>.</p>"
        f"<p><a href=\"{html.escape(join_url, quote=True)}\">Join the conversation</a></p>"
        "<p>The link expires in a few days. Ask for a new invite if it has expired.</p>"
    )
    return subject, body, text


class Mailer(ABC):
    """Sends invitation emails."""

    @abstractmethod
    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message. Returns False (after logging) on failure."""

    def send_invitation(self, to: str, room_name: str, inviter: str, join_url: str) -> bool:
        subject, body, text = render_invite(room_name, inviter, join_url)
        return self.send(to, subject, body, text)


class SesMailer(Mailer):
    """Mailer backed by AWS SES ``send_email``."""

    def __init__(
        self,
        sender: str,
        region_name: str = "us-east-1",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        aws_session_token: Optional[str] = None,
    ) -> None:
        self._sender = sender
        kwargs: dict = {"region_name": region_name}
        if aws_access_key_id and aws_secret_access_key:
            kwargs["aws_access_key_id"] = aws_access_key_id
            kwargs["aws_secret_access_key"] = aws_secret_access_key
        if aws_session_token:
            kwargs["aws_session_token"] = aws_session_token
        self._client = boto3.client("ses", **kwargs)

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        try:
            response = self._client.send_email(
                Source=self._sender,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {
                        "Html": {"Data": html_body, "Charset": "UTF-8"},
                        "Text": {"Data": text_body, "Charset": "UTF-8"},
                    },
                },
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("[Mail] Failed to send to %s: %s", to, e)
            return False
        logger.info("[Mail] Sent %r to %s (id=%s)", subject, to, response.get("MessageId"))
        return True


class LogMailer(Mailer):
    """Writes emails to the log instead of sending them (development)."""

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.info("[Mail] (log only) to=%s subject=%r\n%s", to, subject, text_body)
        return True


def build_mailer(settings: EmailSettings, aws: AwsSecrets) -> Mailer:
    if settings.provider == "ses":
        return SesMailer(
            sender=settings.sender,
            region_name=settings.region,
            aws_access_key_id=aws.access_key_id,
            aws_secret_access_key=aws.secret_access_key,
            aws_session_token=aws.session_token,
        )
    return LogMailer()
