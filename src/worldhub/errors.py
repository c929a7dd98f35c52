"""Error taxonomy for the progression engine.

Every engine failure is a ``HubError`` carrying a stable machine-readable
``code`` and a message that is safe to show to the player. The HTTP layer maps
them to status codes in ``worldhub.middleware.error_handler``.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for all engine errors."""

    code = "hub_error"
    status_code = 400
    recoverable = True
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, **context: object) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class InvalidCode(HubError):
    code = "invalid_code"
    status_code = 401
    default_message = "Unknown access code. Check the code and enter it again."


class Expired(HubError):
    code = "expired"
    status_code = 401
    default_message = "This access code has expired. Ask for a new code."


class SessionNotFound(HubError):
    code = "session_not_found"
    status_code = 404
    default_message = "Session not found"


class InvalidWorldIndex(HubError):
    code = "invalid_world"
    status_code = 404
    default_message = "No such world"


class WorldLocked(HubError):
    code = "world_locked"
    status_code = 409
    default_message = "Finish the previous world to unlock this one."


class WorldAlreadyActive(HubError):
    code = "world_already_active"
    status_code = 409
    default_message = "This world is open on another device. Try again shortly."


class HandleNotFound(HubError):
    code = "handle_not_found"
    status_code = 404
    default_message = "World session is no longer active"


class InvalidTransition(HubError):
    code = "invalid_transition"
    status_code = 409
    default_message = "World cannot change to the requested state"


class GenerationExhausted(HubError):
    code = "generation_exhausted"
    status_code = 503
    recoverable = False
    default_message = "Could not issue a new access code. Try again later."


class SyncConflict(HubError):
    """Telemetry only. Conflicts are always auto-resolved and never raised to callers."""

    code = "sync_conflict"
    status_code = 200


class PersistenceUnavailable(HubError):
    code = "persistence_unavailable"
    status_code = 503
    default_message = "Progress storage is temporarily unavailable"


class ContentLoadTimeout(HubError):
    code = "content_load_timeout"
    status_code = 504
    default_message = "World content could not be loaded in time"
