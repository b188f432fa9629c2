import logging
import os

from dotenv import load_dotenv
from fastapi_mail import FastMail, MessageSchema, ConnectionConfig, MessageType
from pydantic import EmailStr

load_dotenv()

logger = logging.getLogger(__name__)

conf = ConnectionConfig(
    MAIL_USERNAME=os.getenv("MAIL_USERNAME", "user@example.com"),
    MAIL_PASSWORD=os.getenv("MAIL_PASSWORD", "password"),
    MAIL_FROM=os.getenv("MAIL_FROM", "noreply@civic-issues.example.com"),
    MAIL_PORT=int(os.getenv("MAIL_PORT", 587)),
    MAIL_SERVER=os.getenv("MAIL_SERVER", "smtp.gmail.com"),
    MAIL_STARTTLS=os.getenv("MAIL_STARTTLS", "1") == "1",
    MAIL_SSL_TLS=os.getenv("MAIL_SSL_TLS", "0") == "1",
    USE_CREDENTIALS=True,
    VALIDATE_CERTS=True,
    # Delivery is off unless explicitly enabled
    SUPPRESS_SEND=int(os.getenv("MAIL_SUPPRESS_SEND", 1)),
)

STATUS_LABELS = {
    "pending": "Pending",
    "in-progress": "In Progress",
    "resolved": "Resolved",
    "rejected": "Rejected",
}


def status_message(email: str, issue_id: str, title: str, old_status: str, new_status: str) -> MessageSchema:
    old_label = STATUS_LABELS.get(old_status, old_status)
    new_label = STATUS_LABELS.get(new_status, new_status)
    return MessageSchema(
        subject=f"Your issue \"{title}\" is now {new_label}",
        recipients=[email],
        body=(
            f"The status of your reported issue #{issue_id} changed from {old_label} to {new_label}.\n\n"
            f"Sign in to follow its progress and read officer comments."
        ),
        subtype=MessageType.plain,
    )


async def send_status_update(email: EmailStr, issue_id: str, title: str, old_status: str, new_status: str):
    """Email the reporter about a status change. Runs as a background task, so it never raises."""
    fm = FastMail(conf)
    try:
        await fm.send_message(status_message(email, issue_id, title, old_status, new_status))
    except Exception:
        logger.exception("Status email for issue %s to %s failed", issue_id, email)
