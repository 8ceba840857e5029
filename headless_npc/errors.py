from __future__ import annotations


class NpcError(Exception):
    """Base class for every error raised by the turn pipeline."""

    status_code = 500


class ClientError(NpcError, ValueError):
    status_code = 400


class MissingUserMessageError(ClientError):
    pass


class MissingCharacterIdError(ClientError):
    pass


class RoleMismatchError(ClientError):
    pass


class InvalidCursorError(ClientError):
    pass


class SessionNotFoundError(ClientError):
    status_code = 404


class AvatarNotFoundError(ClientError):
    status_code = 404


class VersionConflictError(NpcError):
    status_code = 409

    def __init__(self, session_id: str, expected: int, actual: int | None) -> None:
        super().__init__(f"Session {session_id} version conflict (expected={expected}, actual={actual})")
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class UpstreamError(NpcError, RuntimeError):
    status_code = 502


class UpstreamTransportError(UpstreamError):
    def __init__(self, endpoint: str, status: int, body: str) -> None:
        super().__init__(f"Upstream {endpoint} error {status}: {body[:500]}")
        self.endpoint = endpoint
        self.status = status
        self.body = body


class UpstreamFormatError(UpstreamError):
    pass


class ResponseValidationError(UpstreamFormatError):
    pass


class EmptyStreamError(UpstreamFormatError):
    pass


class MemoryBackendUnavailable(NpcError, RuntimeError):
    status_code = 503


class ConfigurationError(NpcError, RuntimeError):
    pass


class CharacterNotFoundError(ConfigurationError):
    status_code = 404

    def __init__(self, character_id: str) -> None:
        super().__init__(f"Character {character_id} not found")
        self.character_id = character_id
