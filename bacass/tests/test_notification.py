import smtplib
from unittest.mock import MagicMock, patch

from bacass.config import Config, RunConfig
from bacass.context import RunContext
from bacass.notification import build_message, format_body, send_notification
from bacass.report import RunReport


def make_report(status: str = "failed") -> RunReport:
    return RunReport(
        run={},
        samples={},
        global_fragments={},
        hashes={},
        job_counts={},
        failures={"B": [{"node": "unicycler", "error": "unicycler [B]: command failed"}]},
        skipped={},
        join_mismatches=[{"join": "hybrid_reads", "key": "A", "missing": "right"}],
        run_failures=[],
        warnings=["No report fragments from: pycoqc_reports"],
        execution={"run_id": "0123456789abcdef", "status": status},
    )


def make_context(email=None) -> RunContext:
    params = RunConfig(skip_kraken2=True, notification_email=email)
    return RunContext.create(params, run_id="0123456789abcdef")


def test_format_body() -> None:
    body = format_body(make_context("lab@example.com"), make_report())
    assert "finished with status: failed" in body
    assert "Failed: B unicycler: unicycler [B]: command failed" in body
    assert "Join mismatch: hybrid_reads sample A" in body
    assert "Warning: No report fragments from: pycoqc_reports" in body


def test_build_message() -> None:
    message = build_message(make_context("lab@example.com"), make_report("succeeded"))
    assert message["Subject"] == "[bacass] Run 01234567 succeeded"
    assert message["To"] == "lab@example.com"


def test_no_email() -> None:
    with patch("bacass.notification.smtplib.SMTP") as smtp:
        assert not send_notification(make_context(), make_report())
    smtp.assert_not_called()


def test_send_notification() -> None:
    """
    The notification should be sent through the configured SMTP server.
    """
    config = Config({"notification": {"smtp_host": "mail.example.com", "smtp_port": "2525"}})
    with patch("bacass.notification.smtplib.SMTP") as smtp:
        server = MagicMock()
        smtp.return_value.__enter__.return_value = server
        assert send_notification(make_context("lab@example.com"), make_report(), config)

    smtp.assert_called_once_with("mail.example.com", 2525, timeout=30)
    [message] = server.send_message.call_args[0]
    assert message["To"] == "lab@example.com"


def test_send_notification_error() -> None:
    """
    A failure to send should not raise.
    """
    with patch("bacass.notification.smtplib.SMTP", side_effect=smtplib.SMTPException("down")):
        assert not send_notification(make_context("lab@example.com"), make_report())
