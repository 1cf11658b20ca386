"""Error taxonomy shared by the registry and the dispatcher."""
from __future__ import annotations


class ReverserError(Exception):
    """Base error for registry and proxy failures."""


class RegistryError(ReverserError):
    """Raised when a registry operation cannot be completed."""


class ParseError(RegistryError):
    """Raised when an upstream URL is malformed or not absolute."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Invalid target url {url!r}: {reason}")
        self.url = url
        self.reason = reason


class InvalidIdentifierError(RegistryError):
    """Raised when a registration uses an unusable identifier."""


class NotFoundError(RegistryError):
    """Raised when no target is registered under an identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Path {identifier} is not registered")
        self.identifier = identifier


class DispatchError(ReverserError):
    """Base error for failures while forwarding a request."""


class UpstreamUnreachableError(DispatchError):
    """Raised when the upstream cannot be contacted."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Upstream {url} is unreachable: {reason}")
        self.url = url
        self.reason = reason


__all__ = [
    "DispatchError",
    "InvalidIdentifierError",
    "NotFoundError",
    "ParseError",
    "RegistryError",
    "ReverserError",
    "UpstreamUnreachableError",
]
