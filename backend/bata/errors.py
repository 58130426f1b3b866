from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class MarketplaceError(Exception):
    """Base for every domain failure the API maps onto a JSON error body."""

    message: str
    reason: str | None = None
    debug: dict = field(default_factory=dict)

    code = "MARKETPLACE_ERROR"
    status = 400

    def __post_init__(self):
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def http_status(self) -> int:
        return int(self.status)

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "reason": self.reason,
            "message": self.message,
            "status": self.http_status,
        }
        if self.debug:
            payload["debug"] = dict(self.debug)
        return payload


class ProductUnavailable(MarketplaceError):
    code = "PRODUCT_UNAVAILABLE"


class IllegalTransition(MarketplaceError):
    code = "ILLEGAL_TRANSITION"


class Forbidden(MarketplaceError):
    code = "FORBIDDEN"
    status = 403


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    status = 404


class NotSettleable(MarketplaceError):
    code = "NOT_SETTLEABLE"

    @property
    def http_status(self) -> int:
        if self.reason == "already_settled":
            return 409
        return int(self.status)


class DisputeIneligible(MarketplaceError):
    code = "DISPUTE_INELIGIBLE"


class DisputeTerminal(MarketplaceError):
    code = "DISPUTE_TERMINAL"


class InsufficientBalance(MarketplaceError):
    code = "INSUFFICIENT_BALANCE"


class ValidationError(MarketplaceError):
    code = "VALIDATION_ERROR"


class ConcurrentModification(MarketplaceError):
    code = "CONCURRENT_MODIFICATION"
    status = 409


class Unauthorized(MarketplaceError):
    code = "UNAUTHORIZED"
    status = 401
