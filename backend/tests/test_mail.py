"""Tests for invitation email rendering and delivery."""
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from facechat.config import AwsSecrets, EmailSettings
from facechat.mail import LogMailer, SesMailer, build_join_url, build_mailer, render_invite


def test_join_url():
    assert build_join_url("https://chat.example.com/join/", "abc") == "https://chat.example.com/join?token=abc"


def test_render_escapes_html():
    subject, body, text = render_invite("<R&D>", "alice", "https://x/join?token=t")
    assert subject == "alice invited you to join <R&D> on FaceChat"
    assert "&lt;R&amp;D&gt;" in body
    assert "https://x/join?token=t" in text


def test_build_mailer_defaults_to_log():
    assert isinstance(build_mailer(EmailSettings(), AwsSecrets()), LogMailer)


class TestSesMailer:
    @patch("facechat.mail.boto3")
    def test_send_invitation(self, mock_boto3):
        mock_client = MagicMock()
        mock_boto3.client.return_value = mock_client
        mock_client.send_email.return_value = {"MessageId": "m-1"}

        mailer = SesMailer(sender="no-reply@example.com", region_name="eu-west-1")
        assert mailer.send_invitation("carol@example.com", "Team", "alice", "https://x/join?token=t") is True

        mock_boto3.client.assert_called_once_with("ses", region_name="eu-west-1")
        kwargs = mock_client.send_email.call_args.kwargs
        assert kwargs["Source"] == "no-reply@example.com"
        assert kwargs["Destination"] == {"ToAddresses": ["carol@example.com"]}
        assert "Team" in kwargs["Message"]["Subject"]["Data"]

    @patch("facechat.mail.boto3")
    def test_failure_is_reported_not_raised(self, mock_boto3):
        mock_boto3.client.return_value.send_email.side_effect = ClientError(
            {"Error": {"Code": "MessageRejected", "Message": "Email address is not verified"}},
            "SendEmail",
        )
        mailer = SesMailer(sender="no-reply@example.com")
        assert mailer.send("carol@example.com", "s", "<p>b</p>", "b") is False
