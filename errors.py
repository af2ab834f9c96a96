# Keystone Rejections — typed failure values for every inbound action
#
# Transition functions and the marketplace facade return a Rejection instead
# of raising. The kind says how the caller should react; the code is a stable
# machine-readable reason; the message is for humans.
#
#   invalid_transition  action not legal from the current state
#   forbidden           actor lacks authority over the entity
#   conflict            lost a compare-and-swap race, retry with fresh state
#   validation_failed   malformed input (amount mismatch, bad rating, ...)
#   settlement_failed   external settlement permanently rejected an intent
#   not_found           referenced entity absent

from dataclasses import dataclass, field
from enum import Enum


class RejectionKind(str, Enum):
    INVALID_TRANSITION = "invalid_transition"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    VALIDATION_FAILED = "validation_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    NOT_FOUND = "not_found"


# HTTP status per kind, used by the API layer
HTTP_STATUS = {
    RejectionKind.NOT_FOUND: 404,
    RejectionKind.FORBIDDEN: 403,
    RejectionKind.INVALID_TRANSITION: 409,
    RejectionKind.CONFLICT: 409,
    RejectionKind.VALIDATION_FAILED: 422,
    RejectionKind.SETTLEMENT_FAILED: 502,
}


@dataclass(frozen=True)
class Rejection:
    """A refused action. Returned, never raised."""
    kind: RejectionKind
    code: str
    message: str
    details: dict = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind == RejectionKind.CONFLICT

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.kind, 400)

    def to_dict(self) -> dict:
        out = {"kind": self.kind.value, "code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class RejectedError(Exception):
    """Carries a Rejection out of a store transaction so it rolls back."""

    def __init__(self, rejection: Rejection):
        super().__init__(f"{rejection.kind.value}:{rejection.code} {rejection.message}")
        self.rejection = rejection


def is_rejection(value) -> bool:
    return isinstance(value, Rejection)


# ── Constructors ──────────────────────────────────────────────────────

def invalid_transition(code: str, message: str, **details) -> Rejection:
    return Rejection(RejectionKind.INVALID_TRANSITION, code, message, details)


def forbidden(code: str, message: str, **details) -> Rejection:
    return Rejection(RejectionKind.FORBIDDEN, code, message, details)


def conflict(code: str, message: str, **details) -> Rejection:
    return Rejection(RejectionKind.CONFLICT, code, message, details)


def validation_failed(code: str, message: str, **details) -> Rejection:
    return Rejection(RejectionKind.VALIDATION_FAILED, code, message, details)


def settlement_failed(code: str, message: str, **details) -> Rejection:
    return Rejection(RejectionKind.SETTLEMENT_FAILED, code, message, details)


def not_found(entity: str, entity_id) -> Rejection:
    return Rejection(
        RejectionKind.NOT_FOUND,
        f"{entity}_not_found",
        f"{entity.capitalize()} {entity_id} not found",
        {"entity": entity, "id": entity_id},
    )


def check(outcome):
    """Raise a returned Rejection so the surrounding transaction rolls back."""
    if isinstance(outcome, Rejection):
        raise RejectedError(outcome)
    return outcome
