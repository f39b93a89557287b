from __future__ import annotations


class NestError(Exception):
    pass


class ParseError(NestError):
    """Malformed path data. Fatal for the part being read, not for the run."""

    def __init__(self, message: str, token: str = "", position: int = -1) -> None:
        super().__init__(message)
        self.token = token
        self.position = position


class ConfigError(NestError):
    pass


class BooleanOpFailure(NestError):
    """Raised inside the kernel and recorded on the result, never propagated."""
