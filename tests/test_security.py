import os
import unittest

from flask import Flask, request

from dreamtrip import security
from dreamtrip.errors import Unauthorized


class SecurityTests(unittest.TestCase):
    def setUp(self):
        self.app = Flask(__name__)
        self._env_backup = os.environ.copy()

    def tearDown(self):
        os.environ.clear()
        os.environ.update(self._env_backup)

    def test_allowed_origins_includes_defaults(self):
        os.environ["ALLOWED_ORIGINS"] = "https://dreamtrip.example.com, "
        allowed = security.get_allowed_origins()
        self.assertIn("https://dreamtrip.example.com", allowed)
        self.assertIn("http://localhost:3000", allowed)
        self.assertNotIn("", allowed)

    def test_bearer_token_identifies_caller(self):
        headers = {"Authorization": "Bearer user-42"}
        with self.app.test_request_context("/api/trip-limit", method="POST", headers=headers):
            self.assertEqual(security.require_user_id(request, {"userId": "someone-else"}), "user-42")

    def test_body_user_id_is_fallback(self):
        with self.app.test_request_context("/api/trip-limit", method="POST"):
            self.assertEqual(security.require_user_id(request, {"userId": " user-7 "}), "user-7")

    def test_missing_identity_is_unauthorized(self):
        headers = {"Authorization": "Basic abc"}
        with self.app.test_request_context("/api/trip-limit", method="POST", headers=headers):
            with self.assertRaises(Unauthorized):
                security.require_user_id(request, {})
            with self.assertRaises(Unauthorized):
                security.require_user_id(request, {"userId": "x" * 129})

    def test_callback_secret(self):
        headers = {"X-Callback-Secret": "s3cret"}
        with self.app.test_request_context("/api/payment/callback", method="POST", headers=headers):
            self.assertTrue(security.callback_secret_valid(request, "s3cret"))
            self.assertFalse(security.callback_secret_valid(request, "other"))
            self.assertTrue(security.callback_secret_valid(request, ""))
            self.assertFalse(security.callback_secret_valid(request, "", required=True))
            self.assertTrue(security.callback_secret_valid(request, "s3cret", required=True))

    def test_security_headers_applied(self):
        os.environ.pop("ENABLE_HSTS", None)
        response = self.app.response_class("ok")
        response = security.apply_security_headers(response)
        self.assertEqual(response.headers.get("X-Content-Type-Options"), "nosniff")
        self.assertEqual(response.headers.get("X-Frame-Options"), "DENY")
        self.assertEqual(response.headers.get("Cache-Control"), "no-store")
        self.assertIn("default-src 'none'", response.headers["Content-Security-Policy"])
        self.assertNotIn("Strict-Transport-Security", response.headers)

    def test_hsts_is_opt_in(self):
        os.environ["ENABLE_HSTS"] = "true"
        response = security.apply_security_headers(self.app.response_class("ok"))
        self.assertIn("max-age", response.headers["Strict-Transport-Security"])


if __name__ == "__main__":
    unittest.main()
