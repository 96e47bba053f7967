"""
auth/notify.py -- Outbound delivery of invitation and password-reset links.

Delivery (email, chat, ...) is an external collaborator. The orchestrator
only depends on the Notifier protocol; the default LoggingNotifier records
that a message would have been sent. It logs the recipient and the kind of
message, never the raw token.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("nestguard.notify")


class Notifier(Protocol):
    def send_invitation(self, email: str, raw_token: str, role: str) -> None: ...

    def send_password_reset(self, email: str, raw_token: str) -> None: ...


class LoggingNotifier:
    def send_invitation(self, email: str, raw_token: str, role: str) -> None:
        logger.info("Invitation for role %s ready for delivery to %s", role, email)

    def send_password_reset(self, email: str, raw_token: str) -> None:
        logger.info("Password reset link ready for delivery to %s", email)
