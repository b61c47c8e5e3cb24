"""
Completion e-mail for a run.
"""

import smtplib
from email.message import EmailMessage
from typing import TYPE_CHECKING, Optional

from bacass.config import Config
from bacass.context import RunContext
from bacass.logging import logger

if TYPE_CHECKING:
    from bacass.report import RunReport

DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25
DEFAULT_SENDER = "bacass@localhost"


def format_subject(report: "RunReport") -> str:
    status = report.execution["status"]
    return "[bacass] Run {} {}".format(report.execution["run_id"][:8], status)


def format_body(context: RunContext, report: "RunReport") -> str:
    """
    Plain text summary of a run for the completion e-mail.
    """
    lines = [
        "bacass run {} finished with status: {}".format(
            report.execution["run_id"], report.execution["status"]
        ),
        "",
        f"Samples: {len(context.samples)}",
        f"Assembler: {context.params.assembler} ({context.params.assembly_type})",
        f"Output directory: {context.output_dir}",
        "",
    ]
    for sample in sorted(report.failures):
        for failure in report.failures[sample]:
            lines.append("Failed: {} {}: {}".format(sample, failure["node"], failure["error"]))
    for mismatch in report.join_mismatches:
        lines.append("Join mismatch: {join} sample {key}".format(**mismatch))
    for message in report.run_failures + report.warnings:
        lines.append(f"Warning: {message}")
    return "\n".join(lines) + "\n"


def build_message(
    context: RunContext, report: "RunReport", sender: str = DEFAULT_SENDER
) -> EmailMessage:
    assert context.params.notification_email
    message = EmailMessage()
    message["Subject"] = format_subject(report)
    message["From"] = sender
    message["To"] = context.params.notification_email
    message.set_content(format_body(context, report))
    return message


def send_notification(
    context: RunContext, report: "RunReport", config: Optional[Config] = None
) -> bool:
    """
    Send the completion e-mail when `notification_email` is set.

    SMTP settings come from the `[notification]` config section. A failure to
    send is logged and does not change the outcome of the run.
    """
    if not context.params.notification_email:
        return False

    section = (config or Config()).get("notification", {})
    host = section.get("smtp_host", DEFAULT_SMTP_HOST)
    port = int(section.get("smtp_port", DEFAULT_SMTP_PORT))
    message = build_message(context, report, sender=section.get("sender", DEFAULT_SENDER))

    try:
        with smtplib.SMTP(host, port, timeout=30) as smtp:
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as error:
        logger.warning(f"Could not send notification to {message['To']}: {error}")
        return False

    logger.info(f"Notification sent to {message['To']}")
    return True
