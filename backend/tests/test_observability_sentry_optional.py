from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from bata.utils.observability import _before_send_scrub, init_sentry, set_sentry_user


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)
            set_sentry_user(7, "buyer")

    def test_scrubber_redacts_credentials(self):
        event = {
            "request": {
                "headers": {
                    "Authorization": "Bearer abc",
                    "Idempotency-Key": "k-1",
                    "X-Request-Id": "rid-1",
                },
                "data": {"account_number": "0123455678", "amount": "2000.00"},
            }
        }
        scrubbed = _before_send_scrub(event, None)
        headers = scrubbed["request"]["headers"]
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["Idempotency-Key"], "[REDACTED]")
        self.assertEqual(headers["X-Request-Id"], "rid-1")
        self.assertEqual(scrubbed["request"]["data"]["account_number"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["data"]["amount"], "2000.00")


if __name__ == "__main__":
    unittest.main()
