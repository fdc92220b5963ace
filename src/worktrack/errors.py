"""Error taxonomy shared by the engine, the store and the control surface."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for errors that are reported to control clients."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class TransientIO(TrackerError):
    """A retryable storage or collaborator failure."""

    kind = "TransientIO"
    status_code = 503


class NotFound(TrackerError):
    kind = "NotFound"
    status_code = 404


class Conflict(TrackerError):
    kind = "Conflict"
    status_code = 409


class AlreadyRunning(TrackerError):
    kind = "AlreadyRunning"
    status_code = 409


class Corrupted(TrackerError):
    """The durable store is unreadable; the daemon runs in degraded mode."""

    kind = "Corrupted"
    status_code = 503


class BadRequest(TrackerError):
    kind = "BadRequest"
    status_code = 400


ERROR_KINDS: dict[str, type[TrackerError]] = {
    cls.kind: cls
    for cls in (TransientIO, NotFound, Conflict, AlreadyRunning, Corrupted, BadRequest)
}


def error_from_payload(payload: dict[str, str]) -> TrackerError:
    """Rebuild a typed error from a ``{kind, message}`` envelope."""
    cls = ERROR_KINDS.get(payload.get("kind", ""), TrackerError)
    return cls(payload.get("message", "unknown error"))
