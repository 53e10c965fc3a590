"""
Result taxonomy surfaced by the core to its callers.

  ValidationError      malformed payload, never sent to the network
  ReservationConflict  bundle sold out at reservation time
  TransportError       network / timeout / non-2xx, retryable by re-invoking
  IntegrationDefect    a success response missing a contractual field
  UnknownOrder         order id not known to the caller's session
  RewardRejected       informational ledger rejections (AlreadyClaimed,
                       TooEarly, NotUnlocked); refresh state, no alarm
"""
from __future__ import annotations
from typing import Optional


class QuestgateError(Exception):
    kind = "error"
    retryable = False
    http_status = 500

    def __init__(self, message: str, **detail) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        out = {"ok": False, "error": self.kind, "message": self.message}
        if self.retryable:
            out["retryable"] = True
        return out


class ValidationError(QuestgateError):
    kind = "validation"
    http_status = 400


class ReservationConflict(QuestgateError):
    kind = "reservation_conflict"
    http_status = 409


class TransportError(QuestgateError):
    kind = "transport"
    retryable = True
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None,
                 **detail) -> None:
        super().__init__(message, **detail)
        self.status_code = status_code


class IntegrationDefect(QuestgateError):
    kind = "integration_defect"
    http_status = 502


class UnknownOrder(QuestgateError):
    kind = "not_found"
    http_status = 404


class RewardRejected(QuestgateError):
    kind = "rejected"
    http_status = 200

    def to_dict(self) -> dict:
        out = {"ok": False, "state": self.kind, "message": self.message}
        out.update(self.detail)
        return out


class AlreadyClaimed(RewardRejected):
    kind = "already_claimed"


class TooEarly(RewardRejected):
    kind = "too_early"


class NotUnlocked(RewardRejected):
    kind = "not_unlocked"
