"""Domain error taxonomy.

Services raise these; ``metercore.main`` maps them onto HTTP responses.
Each error carries enough structured detail for the caller to act on it.
"""

from __future__ import annotations

from typing import Any


class MeterCoreError(Exception):
    """Base class for every domain error."""

    code = "error"

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.detail}


class NotFound(MeterCoreError):
    code = "not_found"


class FeatureNotEntitled(MeterCoreError):
    """The tenant's plan does not unlock the requested feature."""

    code = "feature_not_entitled"

    def __init__(self, feature: str, message: str | None = None, **detail: Any) -> None:
        super().__init__(
            message or f"{feature} is not available on your plan. Please upgrade to access this feature.",
            feature=feature,
            upgrade_required=True,
            **detail,
        )
        self.feature = feature


class LimitExceeded(FeatureNotEntitled):
    code = "limit_exceeded"

    def __init__(self, limit: str, ceiling: int, current: int, requested: int) -> None:
        super().__init__(
            limit,
            f"Your plan allows {ceiling} {limit}; {current} in use, {requested} requested.",
            ceiling=ceiling,
            current=current,
            requested=requested,
        )


class InsufficientCredits(MeterCoreError):
    code = "insufficient_credits"

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InvalidStateTransition(MeterCoreError):
    code = "invalid_state_transition"

    def __init__(self, entity: str, entity_id: Any, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity} {entity_id} from '{current}' to '{target}'.",
            entity=entity,
            entity_id=str(entity_id),
            current_state=current,
            target_state=target,
        )
        self.current = current
        self.target = target


class PaymentRailFailure(MeterCoreError):
    """Wallet had insufficient funds or the gateway declined / was unreachable."""

    code = "payment_failed"


class GatewaySignatureInvalid(MeterCoreError):
    code = "invalid_signature"


class DispatchTransientFailure(MeterCoreError):
    """The outbound SMS path could not accept the batch at all."""

    code = "dispatch_unavailable"


class IdempotencyConflict(MeterCoreError):
    """An idempotency key was reused for a different tenant or amount."""

    code = "idempotency_conflict"


class LedgerContention(MeterCoreError):
    """Optimistic retries on a tenant's credit account were exhausted."""

    code = "ledger_busy"
