"""User-facing notifications and the boundary that produces them.

Workflow operations raise; the boundary in :func:`run_action` is the single
place where those errors are logged and turned into a notification instead of
propagating further.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Protocol, TypeVar

from connector import AuthError, CarebookClientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

GENERIC_FAILURE = "Something went wrong. Please try again."


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None:
        """Deliver ``notification`` to the user."""


@dataclass
class LoggingNotifier:
    """Notifier that logs each notification and keeps the history."""

    history: List[Notification] = field(default_factory=list)

    def notify(self, notification: Notification) -> None:
        self.history.append(notification)
        level = logging.WARNING if notification.variant == "destructive" else logging.INFO
        logger.log(level, "%s: %s", notification.title, notification.description)


@dataclass
class ActionResult(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    notification: Optional[Notification] = None


def run_action(
    action: Callable[[], T],
    notifier: Notifier,
    *,
    success_title: Optional[str] = None,
    success_description: str = "",
    failure_title: str = "Error",
    failure_description: str = GENERIC_FAILURE,
) -> ActionResult[T]:
    """Run ``action`` and report its outcome through ``notifier``.

    Authentication and validation messages are shown verbatim; data-access
    failures get ``failure_description``. Errors are not re-raised.
    """

    try:
        value = action()
    except AuthError as exc:
        logger.warning("%s: %s", failure_title, exc)
        return _failed(notifier, exc, failure_title, str(exc) or failure_description)
    except ValueError as exc:
        logger.warning("%s: %s", failure_title, exc)
        return _failed(notifier, exc, failure_title, str(exc) or failure_description)
    except CarebookClientError as exc:
        logger.exception("%s", failure_title)
        return _failed(notifier, exc, failure_title, failure_description)

    notification: Optional[Notification] = None
    if success_title:
        notification = Notification(success_title, success_description)
        notifier.notify(notification)
    return ActionResult(success=True, value=value, notification=notification)


def _failed(notifier: Notifier, exc: Exception, title: str, description: str) -> ActionResult[Any]:
    notification = Notification(title, description, variant="destructive")
    notifier.notify(notification)
    return ActionResult(success=False, error=exc, notification=notification)
