"""Exception hierarchy shared by the services and the HTTP/WebSocket layer."""
from __future__ import annotations


class BazaarError(Exception):
    """Base exception for Bazaar. Carries a stable code and an HTTP status."""

    code = "Error"
    status_code = 500

    def __init__(self, detail: str = "") -> None:
        self.detail = detail or self.code
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "detail": self.detail}


class Unauthenticated(BazaarError):
    """No session, or the presented session token does not resolve."""

    code = "Unauthenticated"
    status_code = 401


class Forbidden(BazaarError):
    """Valid session without the rights the action needs."""

    code = "Forbidden"
    status_code = 403


class NotFound(BazaarError):
    code = "NotFound"
    status_code = 404


class InvalidInput(BazaarError):
    code = "InvalidInput"
    status_code = 400


class AlreadyExists(BazaarError):
    code = "AlreadyExists"
    status_code = 409


class UnknownMember(BazaarError):
    """Chat membership references a user id that does not exist."""

    code = "UnknownMember"
    status_code = 400

    def __init__(self, member_id: str) -> None:
        self.member_id = member_id
        super().__init__(f"Unknown user: {member_id}")


class StorageFailure(BazaarError):
    """Persistence I/O failed. The in-flight mutation was not applied."""

    code = "StorageFailure"
    status_code = 500
