from __future__ import annotations

from bata.integrations.payments.base import PaymentAuthorization, PaymentsProvider


class MockPaymentsProvider(PaymentsProvider):
    """Confirms every charge immediately. ``decline=True`` simulates a refused card."""

    name = "mock"

    def __init__(self, *, decline: bool = False):
        self.decline = bool(decline)
        self.authorized: list[PaymentAuthorization] = []

    def authorize(self, *, payer_id: int, amount_minor: int, reference: str, metadata: dict | None = None) -> PaymentAuthorization:
        if self.decline:
            return PaymentAuthorization(
                ok=False,
                reference=reference,
                provider=self.name,
                amount_minor=int(amount_minor),
                status="declined",
                message="Payment declined",
            )
        result = PaymentAuthorization(
            ok=True,
            reference=f"MOCK-{reference}",
            provider=self.name,
            amount_minor=int(amount_minor),
            raw={"payer_id": int(payer_id), "metadata": metadata or {}},
        )
        self.authorized.append(result)
        return result
