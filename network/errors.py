"""Failure taxonomy shared by the data plane and the REST control plane."""

from __future__ import annotations

from typing import Any, Dict


class ToxiproxyError(Exception):
    """Base error carrying the HTTP status the control plane answers with."""

    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "status": self.status}


class NotFound(ToxiproxyError):
    status = 404


class Conflict(ToxiproxyError):
    status = 409


class ProxyExists(Conflict):
    pass


class ToxicExists(Conflict):
    pass


class InvalidRequest(ToxiproxyError):
    status = 400


class InvalidToxic(InvalidRequest):
    pass


class IOFailure(ToxiproxyError):
    """Socket-level failure; only ever tears down the affected link."""
