"""Firebase client utilities.

This module provides high-level clients for the Firebase services Carebook is
built on: Authentication (Identity Toolkit), Cloud Firestore and the
secure-token endpoint used to refresh ID tokens. The clients manage HTTP
session handling, ID token refresh and structured error reporting so that the
workflow layer only ever sees ``CarebookClientError`` subclasses.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
import string
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .firestore_values import decode_document, encode_fields, encode_value
from .query import FieldFilter, Query

__all__ = [
    "CarebookClientError",
    "DocumentStoreError",
    "DocumentNotFoundError",
    "AuthError",
    "InvalidCredentialsError",
    "DuplicateAccountError",
    "RequiresRecentLoginError",
    "WeakPasswordError",
    "StorageError",
    "AuthUser",
    "FirebaseBaseClient",
    "FirebaseAuthClient",
    "FirestoreClient",
    "SERVER_TIMESTAMP_FIELDS",
    "build_structured_query",
    "generate_document_id",
]


# Handlers are left to the hosting application.
logger = logging.getLogger(__name__)


DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 60
DEFAULT_TIMEOUT_SECONDS = float(os.getenv("CAREBOOK_HTTP_TIMEOUT", "30"))
DEFAULT_MAX_RETRIES = int(os.getenv("CAREBOOK_HTTP_MAX_RETRIES", "0"))
DEFAULT_BACKOFF_FACTOR = 0.5
DEFAULT_POLL_SECONDS = float(os.getenv("CAREBOOK_POLL_SECONDS", "5"))

DEFAULT_API_KEY = os.getenv("FIREBASE_API_KEY")
DEFAULT_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
DEFAULT_AUTH_BASE_URL = os.getenv(
    "FIREBASE_AUTH_BASE_URL", "https://identitytoolkit.googleapis.com/v1"
)
DEFAULT_TOKEN_URL = os.getenv("FIREBASE_TOKEN_URL", "https://securetoken.googleapis.com/v1/token")
DEFAULT_FIRESTORE_BASE_URL = os.getenv(
    "FIRESTORE_BASE_URL", "https://firestore.googleapis.com/v1"
)

SERVER_TIMESTAMP_FIELDS = ("createdAt", "updatedAt")

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits
_SIMPLE_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


class CarebookClientError(RuntimeError):
    """Base exception for backend client errors."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class DocumentStoreError(CarebookClientError):
    """Raised when the document store rejects or fails a request."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when an update or delete targets a missing document."""


class AuthError(CarebookClientError):
    """Raised when an authentication request fails.

    The message is suitable for showing to the user as-is.
    """


class InvalidCredentialsError(AuthError):
    pass


class DuplicateAccountError(AuthError):
    pass


class RequiresRecentLoginError(AuthError):
    pass


class WeakPasswordError(AuthError):
    pass


class StorageError(CarebookClientError):
    """Raised when the blob store rejects or fails a request."""


_AUTH_ERRORS: Dict[str, Tuple[type, str]] = {
    "EMAIL_EXISTS": (DuplicateAccountError, "The email address is already in use by another account."),
    "EMAIL_NOT_FOUND": (InvalidCredentialsError, "Invalid email or password."),
    "INVALID_PASSWORD": (InvalidCredentialsError, "Invalid email or password."),
    "INVALID_LOGIN_CREDENTIALS": (InvalidCredentialsError, "Invalid email or password."),
    "INVALID_EMAIL": (InvalidCredentialsError, "The email address is badly formatted."),
    "USER_DISABLED": (AuthError, "The user account has been disabled by an administrator."),
    "TOO_MANY_ATTEMPTS_TRY_LATER": (
        AuthError,
        "Access to this account has been temporarily disabled due to many failed login attempts.",
    ),
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN": (
        RequiresRecentLoginError,
        "This operation is sensitive and requires recent authentication. Log in again before retrying this request.",
    ),
    "TOKEN_EXPIRED": (
        RequiresRecentLoginError,
        "This operation is sensitive and requires recent authentication. Log in again before retrying this request.",
    ),
    "WEAK_PASSWORD": (WeakPasswordError, "Password should be at least 6 characters."),
}


@dataclass(frozen=True)
class AuthUser:
    """The signed-in account and its ID token."""

    uid: str
    email: Optional[str]
    id_token: str
    refresh_token: str
    expires_at: datetime
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    email_verified: bool = False

    def is_valid(self, buffer_seconds: int) -> bool:
        """Check if the ID token is still valid with a refresh buffer."""

        return datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds) < self.expires_at


def _expiry(expires_in: Any) -> datetime:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        logger.warning("Token response has invalid expiresIn %r; defaulting to 5 minutes", expires_in)
        seconds = 300
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def _error_message(response: Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:2048]
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            return str(error.get("message") or error.get("status") or error)
        if error:
            return str(error)
    return str(payload)[:2048]


class FirebaseBaseClient:
    """Shared functionality for Firebase REST clients."""

    service_name = "Firebase"
    error_class: type = CarebookClientError

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = DEFAULT_API_KEY,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._token_provider = token_provider
        self._session = session or self._build_session(max_retries=max_retries, backoff_factor=backoff_factor)

    def _build_session(self, *, max_retries: int, backoff_factor: float) -> requests.Session:
        session = requests.Session()
        if max_retries <= 0:
            return session
        retry_strategy = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET", "POST", "PATCH", "DELETE", "OPTIONS"),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[Any] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200,),
        authorize: bool = True,
    ) -> Response:
        if not path:
            raise ValueError("path must be provided")
        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}/{path.lstrip('/')}"
        request_headers = {"Accept": "application/json"}
        if authorize and self._token_provider is not None:
            token = self._token_provider()
            if token:
                request_headers["Authorization"] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)
        request_params = dict(params or {})
        if self.api_key:
            request_params.setdefault("key", self.api_key)

        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params=request_params or None,
                json=json_payload,
                data=data,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Request to %s failed: %s", self.service_name, exc)
            raise self.error_class(f"Failed to execute request to {self.service_name}") from exc

        if response.status_code not in expected_status:
            self._log_error_response(response)
            self._raise_for_response(response)

        return response

    def _raise_for_response(self, response: Response) -> None:
        raise self.error_class(
            f"{self.service_name} responded with unexpected status {response.status_code}: "
            f"{_error_message(response)}",
            status_code=response.status_code,
        )

    def _log_error_response(self, response: Response) -> None:
        logger.error(
            "%s error response: status=%s body=%s",
            self.service_name,
            response.status_code,
            _error_message(response),
        )


class FirebaseAuthClient(FirebaseBaseClient):
    """Client for Firebase Authentication's email/password flows.

    Holds the signed-in user for the process and notifies listeners whenever it
    changes, so a :class:`agents.session.SessionGate` can follow sign-in and
    sign-out without polling.
    """

    service_name = "Firebase Auth"
    error_class = AuthError

    def __init__(
        self,
        *,
        api_key: Optional[str] = DEFAULT_API_KEY,
        base_url: str = DEFAULT_AUTH_BASE_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        token_refresh_buffer: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        if not token_url:
            raise ValueError("token_url must be provided")
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            session=session,
        )
        self.token_url = token_url
        self.token_refresh_buffer = token_refresh_buffer
        self._user_lock = threading.RLock()
        self._user: Optional[AuthUser] = None
        self._listeners: List[Callable[[Optional[AuthUser]], None]] = []

    @property
    def current_user(self) -> Optional[AuthUser]:
        return self._user

    def _raise_for_response(self, response: Response) -> None:
        message = _error_message(response)
        # Identity Toolkit messages look like "WEAK_PASSWORD : Password should be ...".
        code, _, detail = message.partition(" : ")
        code = code.strip()
        error_cls, friendly = _AUTH_ERRORS.get(code, (AuthError, ""))
        raise error_cls(detail.strip() or friendly or message, status_code=response.status_code, code=code)

    def _set_user(self, user: Optional[AuthUser]) -> None:
        with self._user_lock:
            changed = (self._user is None) != (user is None) or (
                user is not None and self._user is not None and self._user.uid != user.uid
            )
            self._user = user
            listeners = list(self._listeners)
        if not changed:
            return
        for listener in listeners:
            try:
                listener(user)
            except Exception:  # noqa: BLE001 - one listener must not starve the others
                logger.exception("Auth state listener failed")

    def on_auth_state_changed(self, callback: Callable[[Optional[AuthUser]], None]) -> Callable[[], None]:
        """Register ``callback``; it is invoked now and on every sign-in/sign-out."""

        with self._user_lock:
            self._listeners.append(callback)
            user = self._user
        callback(user)

        def unsubscribe() -> None:
            with self._user_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _user_from_payload(self, payload: Mapping[str, Any]) -> AuthUser:
        id_token = payload.get("idToken")
        uid = payload.get("localId")
        if not id_token or not uid:
            logger.error("Auth response did not include idToken/localId: %s", sorted(payload))
            raise AuthError("Authentication response was incomplete")
        return AuthUser(
            uid=str(uid),
            email=payload.get("email"),
            id_token=str(id_token),
            refresh_token=str(payload.get("refreshToken", "")),
            expires_at=_expiry(payload.get("expiresIn")),
            display_name=payload.get("displayName") or None,
            photo_url=payload.get("photoUrl") or None,
            email_verified=bool(payload.get("emailVerified", False)),
        )

    def sign_up(self, email: str, password: str) -> AuthUser:
        """Create an email/password account and sign it in."""

        if not email or not password:
            raise ValueError("email and password must be provided")
        response = self._request(
            "POST",
            "accounts:signUp",
            json_payload={"email": email, "password": password, "returnSecureToken": True},
        )
        user = self._user_from_payload(response.json())
        logger.info("Registered Firebase account %s", user.uid)
        self._set_user(user)
        return user

    def sign_in(self, email: str, password: str) -> AuthUser:
        if not email or not password:
            raise ValueError("email and password must be provided")
        response = self._request(
            "POST",
            "accounts:signInWithPassword",
            json_payload={"email": email, "password": password, "returnSecureToken": True},
        )
        user = self._user_from_payload(response.json())
        logger.info("Signed in Firebase account %s", user.uid)
        self._set_user(user)
        return user

    def sign_out(self) -> None:
        self._set_user(None)

    def send_password_reset(self, email: str) -> None:
        if not email:
            raise ValueError("email must be provided")
        self._request(
            "POST",
            "accounts:sendOobCode",
            json_payload={"requestType": "PASSWORD_RESET", "email": email},
        )

    def send_email_verification(self) -> None:
        self._request(
            "POST",
            "accounts:sendOobCode",
            json_payload={"requestType": "VERIFY_EMAIL", "idToken": self._require_token()},
        )

    def update_profile(
        self, *, display_name: Optional[str] = None, photo_url: Optional[str] = None
    ) -> AuthUser:
        user = self._require_user()
        payload: Dict[str, Any] = {"idToken": self._require_token(), "returnSecureToken": False}
        if display_name is not None:
            payload["displayName"] = display_name
        if photo_url is not None:
            payload["photoUrl"] = photo_url
        response = self._request("POST", "accounts:update", json_payload=payload)
        data = response.json()
        updated = replace(
            user,
            display_name=data.get("displayName", user.display_name),
            photo_url=data.get("photoUrl", user.photo_url),
        )
        with self._user_lock:
            self._user = updated
        return updated

    def reload_user(self) -> AuthUser:
        """Re-read the signed-in account, e.g. to pick up email verification."""

        user = self._require_user()
        response = self._request("POST", "accounts:lookup", json_payload={"idToken": self._require_token()})
        users = response.json().get("users") or []
        if not users:
            raise AuthError("No user is signed in")
        account = users[0]
        refreshed = replace(
            self._user or user,
            email=account.get("email", user.email),
            display_name=account.get("displayName", user.display_name),
            photo_url=account.get("photoUrl", user.photo_url),
            email_verified=bool(account.get("emailVerified", user.email_verified)),
        )
        with self._user_lock:
            self._user = refreshed
        return refreshed

    def change_password(self, new_password: str) -> AuthUser:
        if not new_password:
            raise ValueError("new_password must be provided")
        response = self._request(
            "POST",
            "accounts:update",
            json_payload={
                "idToken": self._require_token(),
                "password": new_password,
                "returnSecureToken": True,
            },
        )
        user = self._user_from_payload(response.json())
        with self._user_lock:
            self._user = user
        return user

    def get_id_token(self, force_refresh: bool = False) -> Optional[str]:
        """Return a valid ID token for the signed-in user, refreshing it if needed."""

        user = self._user
        if user is None:
            return None
        if not force_refresh and user.is_valid(self.token_refresh_buffer):
            return user.id_token

        with self._user_lock:
            user = self._user
            if user is None:
                return None
            if not force_refresh and user.is_valid(self.token_refresh_buffer):
                return user.id_token

            logger.debug("Refreshing Firebase ID token for %s", user.uid)
            response = self._request(
                "POST",
                self.token_url,
                data={"grant_type": "refresh_token", "refresh_token": user.refresh_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            try:
                payload = response.json()
            except ValueError as exc:
                raise AuthError("Invalid token response from Firebase") from exc

            id_token = payload.get("id_token")
            if not id_token:
                logger.error("Token response did not include id_token")
                raise AuthError("Token response missing id_token")
            refreshed = replace(
                user,
                id_token=str(id_token),
                refresh_token=str(payload.get("refresh_token") or user.refresh_token),
                expires_at=_expiry(payload.get("expires_in")),
            )
            self._user = refreshed
            logger.info("Firebase ID token refreshed; expires at %s", refreshed.expires_at.isoformat())
            return refreshed.id_token

    def _require_user(self) -> AuthUser:
        user = self._user
        if user is None:
            raise AuthError("No user is signed in")
        return user

    def _require_token(self) -> str:
        self._require_user()
        token = self.get_id_token()
        if not token:
            raise AuthError("No user is signed in")
        return token


_OPERATOR_NAMES = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array-contains": "ARRAY_CONTAINS",
    "in": "IN",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
    "not-in": "NOT_IN",
}


def _field_path(name: str) -> str:
    if _SIMPLE_FIELD_PATH.match(name):
        return name
    escaped = name.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def _encode_filter(condition: FieldFilter) -> Dict[str, Any]:
    field_ref = {"fieldPath": _field_path(condition.field)}
    if condition.value is None and condition.operator in ("==", "!="):
        op = "IS_NULL" if condition.operator == "==" else "IS_NOT_NULL"
        return {"unaryFilter": {"op": op, "field": field_ref}}
    op_name = _OPERATOR_NAMES.get(condition.operator)
    if op_name is None:
        raise ValueError(f"Unsupported operator for server-side query: {condition.operator!r}")
    return {"fieldFilter": {"field": field_ref, "op": op_name, "value": encode_value(condition.value)}}


def build_structured_query(query: Query) -> Dict[str, Any]:
    """Translate a :class:`Query` into a Firestore ``structuredQuery`` body."""

    structured: Dict[str, Any] = {"from": [{"collectionId": query.collection}]}
    if len(query.filters) == 1:
        structured["where"] = _encode_filter(query.filters[0])
    elif query.filters:
        structured["where"] = {
            "compositeFilter": {"op": "AND", "filters": [_encode_filter(item) for item in query.filters]}
        }
    if query.orders:
        structured["orderBy"] = [
            {
                "field": {"fieldPath": _field_path(order.field)},
                "direction": "DESCENDING" if order.descending else "ASCENDING",
            }
            for order in query.orders
        ]
    if query.max_results is not None:
        structured["limit"] = query.max_results
    return structured


def generate_document_id() -> str:
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(20))


class _PollingListener:
    """Re-runs a fetch on an interval and reports changed results.

    Firestore's streaming listen channel is not exposed over plain REST, so
    push subscriptions are emulated by polling.
    """

    _UNSET = object()

    def __init__(
        self,
        fetch: Callable[[], Any],
        callback: Callable[[Any], None],
        on_error: Optional[Callable[[Exception], None]],
        interval_seconds: float,
        name: str,
    ) -> None:
        self._fetch = fetch
        self._callback = callback
        self._on_error = on_error
        self._interval_seconds = max(0.1, interval_seconds)
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _report(self, exc: Exception) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:  # noqa: BLE001
            logger.exception("Error handler for %s failed", self._thread.name)

    def _run(self) -> None:
        last: Any = self._UNSET
        while not self._stop_event.is_set():
            try:
                snapshot = self._fetch()
            except CarebookClientError as exc:
                logger.error("Subscription %s ended: %s", self._thread.name, exc)
                self._report(exc)
                return
            except Exception as exc:  # noqa: BLE001
                logger.exception("Subscription %s ended unexpectedly", self._thread.name)
                self._report(exc)
                return
            if snapshot != last and not self._stop_event.is_set():
                last = snapshot
                try:
                    self._callback(snapshot)
                except Exception:  # noqa: BLE001 - keep listening after a faulty callback
                    logger.exception("Subscription callback for %s failed", self._thread.name)
            self._stop_event.wait(self._interval_seconds)


class FirestoreClient(FirebaseBaseClient):
    """Client for the Cloud Firestore REST API.

    Records are returned as plain dictionaries with the document identifier
    merged in under ``id``. Creates and updates stamp ``createdAt`` /
    ``updatedAt`` with the server's request time.
    """

    service_name = "Firestore"
    error_class = DocumentStoreError

    def __init__(
        self,
        *,
        project_id: Optional[str] = DEFAULT_PROJECT_ID,
        base_url: str = DEFAULT_FIRESTORE_BASE_URL,
        database: str = "(default)",
        api_key: Optional[str] = DEFAULT_API_KEY,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id must be provided")
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            token_provider=token_provider,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            session=session,
        )
        self.project_id = project_id
        self.database = database
        self.poll_interval = poll_interval

    @property
    def database_path(self) -> str:
        return f"projects/{self.project_id}/databases/{self.database}"

    @property
    def documents_path(self) -> str:
        return f"{self.database_path}/documents"

    def _document_name(self, collection: str, document_id: str) -> str:
        if not collection:
            raise ValueError("collection must be provided")
        if not document_id:
            raise ValueError("document_id must be provided")
        return f"{self.documents_path}/{collection}/{document_id}"

    def _raise_for_response(self, response: Response) -> None:
        message = _error_message(response)
        error_cls = DocumentNotFoundError if response.status_code == 404 else DocumentStoreError
        raise error_cls(
            f"Firestore responded with status {response.status_code}: {message}",
            status_code=response.status_code,
        )

    def get_document(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        name = self._document_name(collection, document_id)
        response = self._request("GET", name, expected_status=(200, 404))
        if response.status_code == 404:
            return None
        try:
            return decode_document(response.json())
        except ValueError as exc:
            raise DocumentStoreError(f"Firestore returned an unreadable document for {collection}/{document_id}") from exc

    def run_query(self, query: Query) -> List[Dict[str, Any]]:
        body = {"structuredQuery": build_structured_query(query)}
        response = self._request("POST", f"{self.documents_path}:runQuery", json_payload=body)
        try:
            rows = response.json()
            return [
                decode_document(row["document"]) for row in rows if isinstance(row, Mapping) and "document" in row
            ]
        except (TypeError, ValueError) as exc:
            raise DocumentStoreError("Firestore returned an invalid query response") from exc

    def _commit(self, write: Dict[str, Any]) -> None:
        self._request("POST", f"{self.documents_path}:commit", json_payload={"writes": [write]})

    def create_document(
        self, collection: str, data: Mapping[str, Any], document_id: Optional[str] = None
    ) -> str:
        """Create (or overwrite, when ``document_id`` is given) a document; return its id."""

        generated = not document_id
        document_id = document_id or generate_document_id()
        fields = {key: value for key, value in data.items() if key not in SERVER_TIMESTAMP_FIELDS and key != "id"}
        write: Dict[str, Any] = {
            "update": {"name": self._document_name(collection, document_id), "fields": encode_fields(fields)},
            "updateTransforms": [
                {"fieldPath": name, "setToServerValue": "REQUEST_TIME"} for name in SERVER_TIMESTAMP_FIELDS
            ],
        }
        if generated:
            # Generated ids never overwrite an existing document.
            write["currentDocument"] = {"exists": False}
        self._commit(write)
        logger.debug("Created %s/%s", collection, document_id)
        return document_id

    def update_document(self, collection: str, document_id: str, data: Mapping[str, Any]) -> None:
        fields = {key: value for key, value in data.items() if key not in ("updatedAt", "id")}
        self._commit(
            {
                "update": {"name": self._document_name(collection, document_id), "fields": encode_fields(fields)},
                "updateMask": {"fieldPaths": [_field_path(key) for key in fields]},
                "currentDocument": {"exists": True},
                "updateTransforms": [{"fieldPath": "updatedAt", "setToServerValue": "REQUEST_TIME"}],
            }
        )

    def delete_document(self, collection: str, document_id: str) -> None:
        self._request("DELETE", self._document_name(collection, document_id), expected_status=(200, 204))

    def subscribe(
        self,
        query: Query,
        callback: Callable[[List[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        listener = _PollingListener(
            lambda: self.run_query(query),
            callback,
            on_error,
            self.poll_interval,
            name=f"firestore-listen-{query.collection}",
        )
        listener.start()
        return listener.stop

    def subscribe_document(
        self,
        collection: str,
        document_id: str,
        callback: Callable[[Optional[Dict[str, Any]]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Callable[[], None]:
        listener = _PollingListener(
            lambda: self.get_document(collection, document_id),
            callback,
            on_error,
            self.poll_interval,
            name=f"firestore-listen-{collection}-{document_id}",
        )
        listener.start()
        return listener.stop
