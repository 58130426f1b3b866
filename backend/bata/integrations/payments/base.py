from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentAuthorization:
    """Confirmation returned by a provider once funds are captured."""

    ok: bool
    reference: str
    provider: str
    amount_minor: int
    status: str = "success"
    message: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def authorize(self, *, payer_id: int, amount_minor: int, reference: str, metadata: dict | None = None) -> PaymentAuthorization:
        raise NotImplementedError
