import unittest

from lab_lending.tests import support
from lab_lending.services import identity_service, user_profile_service
from lab_lending.services.errors import AuthenticationError, NotFoundError, ValidationError
from lab_lending.services.identity_service import get_session, login, logout, register, start_session, subscribe
from lab_lending.services.user_profile_service import (
    create_or_update_profile,
    ensure_profile,
    get_profile,
    role_for_signup,
    set_role,
    sync_profile_on_login,
)


class IdentityTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.open_session()

    def tearDown(self):
        self.db.close()

    def test_register_then_login(self):
        identity = register(self.db, "  Ana@Lab.edu ", "secreto1")
        self.assertEqual(identity["email"], "ana@lab.edu")

        logged_in, token = login(self.db, "ana@lab.edu", "secreto1")
        self.assertEqual(logged_in, identity)
        self.assertEqual(get_session(token), identity)

    def test_register_rejects_bad_input(self):
        with self.assertRaises(ValidationError):
            register(self.db, "not-an-email", "secreto1")
        with self.assertRaisesRegex(ValidationError, "at least 6"):
            register(self.db, "ana@lab.edu", "12345")
        register(self.db, "ana@lab.edu", "secreto1")
        with self.assertRaisesRegex(ValidationError, "already exists"):
            register(self.db, "ANA@lab.edu", "otraclave")

    def test_wrong_password_and_unknown_account(self):
        register(self.db, "ana@lab.edu", "secreto1")
        with self.assertRaises(AuthenticationError):
            login(self.db, "ana@lab.edu", "incorrecta")
        with self.assertRaises(AuthenticationError):
            login(self.db, "nadie@lab.edu", "secreto1")

    def test_logout_revokes_token(self):
        register(self.db, "ana@lab.edu", "secreto1")
        _, token = login(self.db, "ana@lab.edu", "secreto1")
        logout(token)
        self.assertIsNone(get_session(token))

    def test_tampered_or_garbage_tokens(self):
        identity = register(self.db, "ana@lab.edu", "secreto1")
        token = start_session(identity)
        payload, signature = token.split(".", 1)
        self.assertIsNone(get_session(payload + "x." + signature))
        self.assertIsNone(get_session("garbage"))
        self.assertIsNone(get_session(None))

    def test_expired_token(self):
        identity = register(self.db, "ana@lab.edu", "secreto1")
        original_ttl = identity_service.SESSION_TTL_SECONDS
        identity_service.SESSION_TTL_SECONDS = -1
        try:
            token = start_session(identity)
        finally:
            identity_service.SESSION_TTL_SECONDS = original_ttl
        self.assertIsNone(get_session(token))

    def test_listeners_see_sign_in_and_sign_out(self):
        events = []
        unsubscribe = subscribe(events.append)
        try:
            identity = register(self.db, "ana@lab.edu", "secreto1")
            _, token = login(self.db, "ana@lab.edu", "secreto1")
            logout(token)
        finally:
            unsubscribe()
        self.assertEqual(events, [identity, None])

        _, token = login(self.db, "ana@lab.edu", "secreto1")
        self.assertEqual(len(events), 2)

    def test_failing_listener_does_not_break_login(self):
        def broken(identity):
            raise RuntimeError("boom")

        unsubscribe = subscribe(broken)
        try:
            register(self.db, "ana@lab.edu", "secreto1")
            with self.assertLogs("lab_lending.auth", level="ERROR"):
                _, token = login(self.db, "ana@lab.edu", "secreto1")
        finally:
            unsubscribe()
        self.assertIsNotNone(get_session(token))


class ProfileTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.open_session()
        self.original_prefix = user_profile_service.ADMIN_EMAIL_PREFIX

    def tearDown(self):
        user_profile_service.ADMIN_EMAIL_PREFIX = self.original_prefix
        self.db.close()

    def test_signup_role_from_email_prefix(self):
        self.assertEqual(role_for_signup("admin.lab@uni.edu"), "admin")
        self.assertEqual(role_for_signup("ana@uni.edu"), "student")

        user_profile_service.ADMIN_EMAIL_PREFIX = ""
        self.assertEqual(role_for_signup("admin.lab@uni.edu"), "student")

    def test_ensure_profile_creates_then_patches(self):
        created = ensure_profile(self.db, "u1", "ana@lab.edu", "Ana", "555-0101")
        self.assertEqual((created["role"], created["displayName"], created["phone"]), ("student", "Ana", "555-0101"))

        patched = ensure_profile(self.db, "u1", "ana@lab.edu", phone="555-0199")
        self.assertEqual((patched["displayName"], patched["phone"]), ("Ana", "555-0199"))
        self.assertEqual(patched["createdAt"], created["createdAt"])

    def test_ensure_profile_does_not_reset_promoted_role(self):
        ensure_profile(self.db, "u1", "ana@lab.edu", "Ana")
        set_role(self.db, "u1", "admin")
        self.assertEqual(ensure_profile(self.db, "u1", "ana@lab.edu")["role"], "admin")

    def test_login_sync_forces_admin_for_prefixed_email(self):
        ensure_profile(self.db, "u1", "admin@lab.edu", "Jefa de laboratorio")
        set_role(self.db, "u1", "student")
        profile = sync_profile_on_login(self.db, {"uid": "u1", "email": "admin@lab.edu"})
        self.assertEqual(profile["role"], "admin")
        self.assertEqual(profile["displayName"], "Administrador")

    def test_login_sync_creates_missing_student_profile_only_once(self):
        first = sync_profile_on_login(self.db, {"uid": "u2", "email": "luis@lab.edu"})
        self.assertEqual(first["role"], "student")
        create_or_update_profile(self.db, "u2", {"displayName": "Luis"})
        second = sync_profile_on_login(self.db, {"uid": "u2", "email": "luis@lab.edu"})
        self.assertEqual(second["displayName"], "Luis")

    def test_set_role_validation(self):
        ensure_profile(self.db, "u1", "ana@lab.edu")
        with self.assertRaises(ValidationError):
            set_role(self.db, "u1", "superuser")
        with self.assertRaises(NotFoundError):
            set_role(self.db, "missing", "admin")
        self.assertEqual(get_profile(self.db, "u1")["role"], "student")
        self.assertIsNone(get_profile(self.db, "missing"))

    def test_new_profile_needs_email(self):
        with self.assertRaises(ValidationError):
            create_or_update_profile(self.db, "u9", {"displayName": "Sin correo"})


if __name__ == "__main__":
    unittest.main()
