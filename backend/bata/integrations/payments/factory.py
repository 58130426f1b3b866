from __future__ import annotations

import os

from flask import current_app, has_app_context

from bata.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from bata.integrations.payments.base import PaymentsProvider
from bata.integrations.payments.mock_provider import MockPaymentsProvider


def build_payments_provider() -> PaymentsProvider:
    # An app may pin a provider instance (tests, local demos).
    if has_app_context():
        pinned = current_app.extensions.get("bata_payments_provider")
        if pinned is not None:
            return pinned

    provider = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")
    if provider == "mock":
        return MockPaymentsProvider()
    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")
