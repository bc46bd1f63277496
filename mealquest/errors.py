"""Error kinds surfaced by settlement operations.

Each kind maps to one HTTP status in ``mealquest.main``; the message is shown
to the caller as-is, so it must never carry storage details.
"""

from __future__ import annotations


class SettlementError(Exception):
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class Unauthorized(SettlementError):
    kind = "Unauthorized"
    status_code = 401


class Forbidden(Unauthorized):
    status_code = 403


class NotFound(SettlementError):
    kind = "NotFound"
    status_code = 404


class Ineligible(SettlementError):
    kind = "Ineligible"
    status_code = 400


class Conflict(SettlementError):
    kind = "Conflict"
    status_code = 409


class Internal(SettlementError):
    kind = "Internal"
    status_code = 500
