"""Session and role gate.

Tracks who is signed in and which portal they belong to. The gate only
decides which screens and queries apply; it is not an access-control
boundary, and anything sensitive must be enforced by the backend's own rules.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional

from connector import (
    AuthError,
    AuthUser,
    CarebookClientError,
    DocumentNotFoundError,
    DocumentStore,
    FirebaseAuthClient,
)

from .fallback import first_non_empty
from .notifications import ActionResult, Notifier, run_action

logger = logging.getLogger(__name__)

ROLES = ("patient", "doctor", "admin")
DEFAULT_ROLE = "patient"
SESSION_ROLE_KEY = "userRole"
AUTH_PATH = "/auth"


def role_path(role: str, page: str = "") -> str:
    """Portal path for ``role``: ``/<role>`` or ``/<role>/<page>``."""

    if role not in ROLES:
        raise ValueError(f"Unknown role: {role!r}")
    page = page.strip("/")
    return f"/{role}/{page}" if page else f"/{role}"


@dataclass(frozen=True)
class SessionContext:
    user: Optional[AuthUser] = None
    role: Optional[str] = None
    is_loading: bool = True

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    def home_path(self) -> str:
        if not self.is_authenticated or not self.role:
            return AUTH_PATH
        return role_path(self.role)

    def can_access(self, path: str) -> bool:
        """Client-side route guard: auth pages for anyone, portal pages for their own role."""

        normalized = "/" + path.strip().strip("/")
        if normalized == "/" or normalized == AUTH_PATH or normalized.startswith(AUTH_PATH + "/"):
            return True
        if not self.is_authenticated or not self.role:
            return False
        prefix = role_path(self.role)
        return normalized == prefix or normalized.startswith(prefix + "/")


class SessionGate:
    """Keeps a :class:`SessionContext` in step with the auth client.

    ``session_store`` stands in for the browser's session storage: the role
    cached there wins over the profile document, which wins over
    ``default_role``.
    """

    def __init__(
        self,
        auth: FirebaseAuthClient,
        store: DocumentStore,
        *,
        notifier: Notifier,
        session_store: Optional[MutableMapping[str, str]] = None,
        default_role: str = DEFAULT_ROLE,
    ) -> None:
        if default_role not in ROLES:
            raise ValueError(f"Unknown role: {default_role!r}")
        self._auth = auth
        self._store = store
        self._notifier = notifier
        self._session_store: MutableMapping[str, str] = session_store if session_store is not None else {}
        self._default_role = default_role
        self.context = SessionContext()

    def start(self) -> Callable[[], None]:
        """Follow auth state changes; returns the unsubscribe function."""

        return self._auth.on_auth_state_changed(self._handle_auth_change)

    def _handle_auth_change(self, user: Optional[AuthUser]) -> None:
        if user is None:
            self._session_store.pop(SESSION_ROLE_KEY, None)
            self.context = SessionContext(user=None, role=None, is_loading=False)
            return
        self.context = SessionContext(user=user, role=self.resolve_role(user.uid), is_loading=False)

    def _stored_role(self) -> Optional[str]:
        role = self._session_store.get(SESSION_ROLE_KEY)
        return role if role in ROLES else None

    def _profile_role(self, user_id: str) -> Optional[str]:
        try:
            profile = self._store.get_document("users", user_id)
        except CarebookClientError as exc:
            logger.error("Error getting user role for %s: %s", user_id, exc)
            return None
        role = (profile or {}).get("role")
        return role if role in ROLES else None

    def resolve_role(self, user_id: str) -> str:
        return first_non_empty(
            self._stored_role,
            lambda: self._profile_role(user_id),
            default=self._default_role,
        )

    def login(self, email: str, password: str) -> ActionResult[str]:
        """Sign in; the result value is the path to redirect to."""

        def action() -> str:
            self._session_store.pop(SESSION_ROLE_KEY, None)
            user = self._auth.sign_in(email, password)
            role = self._profile_role(user.uid)
            if role:
                self._session_store[SESSION_ROLE_KEY] = role
            self.context = SessionContext(user=user, role=role or self._default_role, is_loading=False)
            return role_path(role) if role else f"{AUTH_PATH}/role-selection"

        return run_action(
            action,
            self._notifier,
            success_title="Logged In",
            success_description="Welcome back! You're now logged in.",
            failure_title="Login Failed",
            failure_description="Failed to login. Please check your credentials.",
        )

    def logout(self) -> ActionResult[str]:
        def action() -> str:
            self._auth.sign_out()
            self._session_store.pop(SESSION_ROLE_KEY, None)
            self.context = SessionContext(user=None, role=None, is_loading=False)
            return AUTH_PATH

        return run_action(
            action,
            self._notifier,
            success_title="Logged Out",
            success_description="You have been successfully logged out.",
            failure_title="Logout Failed",
            failure_description="Failed to logout. Please try again.",
        )

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        role: str,
        additional_data: Optional[Mapping[str, Any]] = None,
    ) -> ActionResult[str]:
        """Create the account plus its ``users`` and ``<role>s`` profile documents."""

        def action() -> str:
            if role not in ROLES:
                raise ValueError(f"Unknown role: {role!r}")
            if not display_name or not display_name.strip():
                raise ValueError("display name must be provided")
            user = self._auth.sign_up(email, password)
            self._auth.update_profile(display_name=display_name)
            self._auth.send_email_verification()

            profile: Dict[str, Any] = dict(additional_data or {})
            profile.update({"uid": user.uid, "email": user.email, "displayName": display_name, "role": role})
            self._store.create_document("users", profile, document_id=user.uid)
            self._store.create_document(f"{role}s", {**profile, "userId": user.uid}, document_id=user.uid)
            logger.info("Registered %s account %s", role, user.uid)
            return f"{AUTH_PATH}/login"

        return run_action(
            action,
            self._notifier,
            success_title="Registration Successful",
            success_description="Your account has been created successfully!",
            failure_title="Registration Failed",
            failure_description="Failed to register. Please try again.",
        )

    def reset_password(self, email: str) -> ActionResult[None]:
        return run_action(
            lambda: self._auth.send_password_reset(email),
            self._notifier,
            success_title="Password Reset Email Sent",
            success_description="Check your inbox for instructions to reset your password.",
            failure_title="Password Reset Failed",
        )

    def change_password(self, new_password: str) -> ActionResult[AuthUser]:
        return run_action(
            lambda: self._auth.change_password(new_password),
            self._notifier,
            success_title="Password Updated",
            success_description="Your password has been changed.",
            failure_title="Password Update Failed",
        )

    def update_profile(self, changes: Mapping[str, Any]) -> ActionResult[None]:
        """Update the signed-in user's profile documents and auth display fields."""

        def action() -> None:
            context = self.context
            if context.user is None or not context.role:
                raise AuthError("No user is signed in")
            if "role" in changes:
                raise ValueError("role cannot be changed from profile settings")
            fields = dict(changes)
            if not fields:
                raise ValueError("no profile changes supplied")
            uid = context.user.uid

            self._store.update_document("users", uid, fields)
            try:
                self._store.update_document(f"{context.role}s", uid, fields)
            except DocumentNotFoundError:
                logger.debug("No %s profile document for %s", context.role, uid)
            if "displayName" in fields or "photoURL" in fields:
                user = self._auth.update_profile(
                    display_name=fields.get("displayName"),
                    photo_url=fields.get("photoURL"),
                )
                self.context = SessionContext(user=user, role=context.role, is_loading=False)

        return run_action(
            action,
            self._notifier,
            success_title="Profile Updated",
            success_description="Your profile has been saved.",
            failure_title="Profile Update Failed",
            failure_description="Failed to update your profile. Please try again.",
        )
