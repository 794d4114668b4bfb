"""
auth/notifier.py -- Outbound delivery boundary for one-time codes.

The core never formats or sends mail itself. It hands (email, code, context)
to a Notifier and treats any exception from send_code as a delivery failure
(AccountService re-raises it as NotificationFailed).

LoggingNotifier is the development implementation: it writes the code to the
log instead of sending it. Never wire it up in production.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("identity.auth.notifier")


class Notifier(Protocol):
    def send_code(self, email: str, code: str, context: str) -> None:
        """Deliver code to email. context is the flow name, e.g. "registration"."""


class LoggingNotifier:
    """Development notifier: logs codes at WARNING so they stand out in the console."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def send_code(self, email: str, code: str, context: str) -> None:
        self.sent.append((email, code, context))
        logger.warning("[dev] %s code for %s: %s", context, email, code)
