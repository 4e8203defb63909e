from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol
import logging


logger = logging.getLogger(__name__)

PASSWORD_RESET_SUBJECT = "Reset your password"


class MailSender(Protocol):
    # Delivery is owned by the caller; the core only produces the template data.
    async def send_password_reset(
        self,
        workspace_id: str | None,
        email: str,
        template_data: Mapping[str, Any],
    ) -> None: ...


@dataclass(frozen=True)
class SentMail:
    workspace_id: str | None
    to: str
    subject: str
    template: str
    variables: dict[str, Any] = field(default_factory=dict)


class LoggingMailSender:
    """Records outgoing mail in memory and logs it instead of delivering."""

    def __init__(self) -> None:
        self.sent: list[SentMail] = []

    async def send_password_reset(
        self,
        workspace_id: str | None,
        email: str,
        template_data: Mapping[str, Any],
    ) -> None:
        message = SentMail(
            workspace_id=workspace_id,
            to=email,
            subject=PASSWORD_RESET_SUBJECT,
            template="password-reset",
            variables=dict(template_data),
        )
        self.sent.append(message)
        # Never log the reset URL; it carries a live credential.
        logger.info("mail_queued template=%s workspace_id=%s", message.template, workspace_id)
