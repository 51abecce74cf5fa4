"""
Error taxonomy for the registry.

Every error carries a machine-readable ``code`` (what device clients match
on) and a short human message (shown to admin callers only).
"""
from typing import Optional


class RegistryError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "server_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self, include_message: bool = False) -> dict:
        body = {"ok": False, "error": self.code}
        if include_message:
            body["message"] = self.message
        return body


class Unauthorized(RegistryError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid or missing credentials"


class NotFound(RegistryError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class InvalidArgument(RegistryError):
    status_code = 400
    code = "invalid_argument"
    default_message = "Invalid request"


class ServiceUnavailable(RegistryError):
    status_code = 503
    code = "service_unavailable"
    default_message = "Service unavailable"


class ServerError(RegistryError):
    pass
