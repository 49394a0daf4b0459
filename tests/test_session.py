import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from agents.fallback import first_non_empty, is_empty
from agents.notifications import GENERIC_FAILURE, LoggingNotifier, run_action
from agents.session import SESSION_ROLE_KEY, SessionContext, SessionGate, role_path
from connector import (
    AuthUser,
    DocumentStoreError,
    FirebaseAuthClient,
    InMemoryDocumentStore,
    InvalidCredentialsError,
)


def make_user(uid: str = "u1", email: str = "u1@example.com") -> AuthUser:
    return AuthUser(
        uid=uid,
        email=email,
        id_token="id-token",
        refresh_token="refresh-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


class FallbackTests(unittest.TestCase):
    def test_first_non_empty_is_lazy(self) -> None:
        expensive = MagicMock(return_value="from lookup")

        self.assertEqual(first_non_empty(None, "  ", "cached", expensive), "cached")
        expensive.assert_not_called()
        self.assertEqual(first_non_empty(None, expensive), "from lookup")
        self.assertEqual(first_non_empty(None, lambda: "", default="fallback"), "fallback")

    def test_is_empty(self) -> None:
        self.assertTrue(is_empty(None))
        self.assertTrue(is_empty(" "))
        self.assertFalse(is_empty(0))
        self.assertFalse(is_empty([]))


class RunActionTests(unittest.TestCase):
    def test_success_notification_only_when_titled(self) -> None:
        notifier = LoggingNotifier()

        result = run_action(lambda: 42, notifier)
        self.assertTrue(result.success)
        self.assertEqual(result.value, 42)
        self.assertEqual(notifier.history, [])

        run_action(lambda: None, notifier, success_title="Saved", success_description="Done.")
        self.assertEqual(notifier.history[-1].title, "Saved")
        self.assertEqual(notifier.history[-1].variant, "default")

    def test_store_errors_use_generic_message(self) -> None:
        notifier = LoggingNotifier()

        def fail():
            raise DocumentStoreError("internal detail", status_code=500)

        result = run_action(fail, notifier)

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, DocumentStoreError)
        self.assertEqual(result.notification.description, GENERIC_FAILURE)
        self.assertEqual(result.notification.variant, "destructive")

    def test_unexpected_errors_propagate(self) -> None:
        def fail():
            raise KeyError("bug")

        with self.assertRaises(KeyError):
            run_action(fail, LoggingNotifier())


class SessionContextTests(unittest.TestCase):
    def test_role_path(self) -> None:
        self.assertEqual(role_path("doctor"), "/doctor")
        self.assertEqual(role_path("patient", "/appointments/"), "/patient/appointments")
        with self.assertRaises(ValueError):
            role_path("nurse")

    def test_can_access_own_portal_only(self) -> None:
        context = SessionContext(user=make_user(), role="doctor", is_loading=False)

        self.assertTrue(context.can_access("/auth/login"))
        self.assertTrue(context.can_access("/doctor/patients"))
        self.assertFalse(context.can_access("/patient"))
        self.assertFalse(context.can_access("/doctorate"))
        self.assertEqual(context.home_path(), "/doctor")

    def test_signed_out_context(self) -> None:
        context = SessionContext(is_loading=False)

        self.assertFalse(context.is_authenticated)
        self.assertFalse(context.can_access("/patient"))
        self.assertTrue(context.can_access("/"))
        self.assertEqual(context.home_path(), "/auth")


class SessionGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.auth = MagicMock(spec=FirebaseAuthClient)
        self.store = InMemoryDocumentStore()
        self.notifier = LoggingNotifier()
        self.session_store = {}
        self.gate = SessionGate(
            self.auth, self.store, notifier=self.notifier, session_store=self.session_store
        )

    def test_role_prefers_session_cache_then_profile_then_default(self) -> None:
        self.store.seed("users", [{"id": "u1", "role": "doctor"}, {"id": "u2", "role": "superuser"}])

        self.assertEqual(self.gate.resolve_role("u1"), "doctor")
        self.assertEqual(self.gate.resolve_role("u2"), "patient")
        self.assertEqual(self.gate.resolve_role("missing"), "patient")

        self.session_store[SESSION_ROLE_KEY] = "admin"
        self.assertEqual(self.gate.resolve_role("u1"), "admin")

    def test_profile_lookup_failure_falls_back_to_default(self) -> None:
        store = MagicMock()
        store.get_document.side_effect = DocumentStoreError("unavailable")
        gate = SessionGate(self.auth, store, notifier=self.notifier, default_role="doctor")

        self.assertEqual(gate.resolve_role("u1"), "doctor")

    def test_auth_state_changes_update_context(self) -> None:
        self.store.seed("users", [{"id": "u1", "role": "doctor"}])
        self.gate.start()
        [handler] = self.auth.on_auth_state_changed.call_args.args

        handler(make_user())
        self.assertEqual(self.gate.context.role, "doctor")
        self.assertFalse(self.gate.context.is_loading)

        self.session_store[SESSION_ROLE_KEY] = "doctor"
        handler(None)
        self.assertIsNone(self.gate.context.user)
        self.assertNotIn(SESSION_ROLE_KEY, self.session_store)

    def test_login_redirects_to_role_portal(self) -> None:
        self.store.seed("users", [{"id": "u1", "role": "doctor"}])
        self.auth.sign_in.return_value = make_user()

        result = self.gate.login("u1@example.com", "secret")

        self.assertTrue(result.success)
        self.assertEqual(result.value, "/doctor")
        self.assertEqual(self.session_store[SESSION_ROLE_KEY], "doctor")
        self.assertEqual(self.notifier.history[-1].title, "Logged In")

    def test_login_without_role_goes_to_role_selection(self) -> None:
        self.auth.sign_in.return_value = make_user("u9")

        result = self.gate.login("u9@example.com", "secret")

        self.assertEqual(result.value, "/auth/role-selection")
        self.assertEqual(self.gate.context.role, "patient")

    def test_login_failure_shows_auth_message_verbatim(self) -> None:
        self.auth.sign_in.side_effect = InvalidCredentialsError("Invalid email or password.", status_code=400)

        result = self.gate.login("u1@example.com", "wrong")

        self.assertFalse(result.success)
        [notification] = self.notifier.history
        self.assertEqual(notification.title, "Login Failed")
        self.assertEqual(notification.description, "Invalid email or password.")
        self.assertEqual(notification.variant, "destructive")

    def test_register_writes_user_and_role_documents(self) -> None:
        self.auth.sign_up.return_value = make_user("new-doc", "doc@example.com")

        result = self.gate.register(
            "doc@example.com", "secret1", "Dr. Grey", "doctor", {"specialty": "Surgery"}
        )

        self.assertEqual(result.value, "/auth/login")
        user_doc = self.store.get_document("users", "new-doc")
        role_doc = self.store.get_document("doctors", "new-doc")
        self.assertEqual(user_doc["role"], "doctor")
        self.assertEqual(user_doc["displayName"], "Dr. Grey")
        self.assertEqual(user_doc["specialty"], "Surgery")
        self.assertEqual(role_doc["userId"], "new-doc")
        self.auth.update_profile.assert_called_once_with(display_name="Dr. Grey")
        self.auth.send_email_verification.assert_called_once_with()

    def test_register_rejects_unknown_role(self) -> None:
        result = self.gate.register("x@example.com", "secret1", "X", "nurse")

        self.assertFalse(result.success)
        self.auth.sign_up.assert_not_called()
        self.assertEqual(self.notifier.history[-1].description, "Unknown role: 'nurse'")

    def test_logout_clears_session(self) -> None:
        self.session_store[SESSION_ROLE_KEY] = "patient"

        result = self.gate.logout()

        self.assertEqual(result.value, "/auth")
        self.auth.sign_out.assert_called_once_with()
        self.assertEqual(self.session_store, {})

    def test_update_profile_updates_both_documents(self) -> None:
        self.store.seed("users", [{"id": "u1", "role": "patient", "displayName": "Old"}])
        self.store.seed("patients", [{"id": "u1", "userId": "u1", "displayName": "Old"}])
        self.gate.context = SessionContext(user=make_user(), role="patient", is_loading=False)
        self.auth.update_profile.return_value = make_user()

        result = self.gate.update_profile({"displayName": "New", "phone": "555"})

        self.assertTrue(result.success)
        self.assertEqual(self.store.get_document("users", "u1")["displayName"], "New")
        self.assertEqual(self.store.get_document("patients", "u1")["phone"], "555")
        self.auth.update_profile.assert_called_once_with(display_name="New", photo_url=None)

    def test_update_profile_tolerates_missing_role_document(self) -> None:
        self.store.seed("users", [{"id": "u1", "role": "patient"}])
        self.gate.context = SessionContext(user=make_user(), role="patient", is_loading=False)

        result = self.gate.update_profile({"phone": "555"})

        self.assertTrue(result.success)
        self.auth.update_profile.assert_not_called()

    def test_update_profile_rejects_role_change(self) -> None:
        self.gate.context = SessionContext(user=make_user(), role="patient", is_loading=False)

        result = self.gate.update_profile({"role": "doctor"})

        self.assertFalse(result.success)
        self.assertEqual(self.store.get_document("users", "u1"), None)


if __name__ == "__main__":
    unittest.main()
