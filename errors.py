"""Domain errors surfaced by the scheduler, the code authenticator and the data layer."""

from typing import Any, Dict, Optional


class TrainerError(Exception):
    """Base class for errors the API turns into tagged responses."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(TrainerError):
    """Malformed or out-of-range caller data."""

    status_code = 400
    public_message = "Invalid input"


class InvalidCode(TrainerError):
    status_code = 400
    public_message = "Invalid code"


class CodeExpired(TrainerError):
    status_code = 400
    public_message = "Code expired"


class StorageError(TrainerError):
    """Persistence failure. The message stays opaque to callers."""

    status_code = 500
    public_message = "Internal server error"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.public_message}
