"""Concurrency-safe registry mapping proxy identifiers to upstream targets."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict

import httpx

from .errors import InvalidIdentifierError, NotFoundError, ParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Target:
    """An upstream registered under an identifier."""

    identifier: str
    upstream: httpx.URL

    @property
    def url(self) -> str:
        return str(self.upstream)


def parse_upstream(target_url: str) -> httpx.URL:
    """Parse ``target_url`` into an absolute URL or raise ``ParseError``."""

    try:
        upstream = httpx.URL(target_url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ParseError(target_url, str(exc)) from exc
    if not upstream.scheme:
        raise ParseError(target_url, "missing scheme")
    if not upstream.host:
        raise ParseError(target_url, "missing host")
    return upstream


class Registry:
    """In-memory identifier -> ``Target`` store guarded by one coarse lock.

    The lock is held only for the dictionary operation itself; URL parsing
    happens before it is acquired and nothing performs I/O while holding it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._targets: Dict[str, Target] = {}

    def register(self, target_url: str, identifier: str) -> Target:
        """Create or replace the target for ``identifier``."""

        if not identifier:
            raise InvalidIdentifierError("Path is required")
        target = Target(identifier=identifier, upstream=parse_upstream(target_url))
        with self._lock:
            replaced = identifier in self._targets
            self._targets[identifier] = target
        logger.debug(
            "proxy target registered",
            extra={"event": "registry.registered", "identifier": identifier, "upstream": target.url, "replaced": replaced},
        )
        return target

    def unregister(self, identifier: str) -> None:
        with self._lock:
            if identifier not in self._targets:
                raise NotFoundError(identifier)
            del self._targets[identifier]
        logger.debug("proxy target unregistered", extra={"event": "registry.unregistered", "identifier": identifier})

    def find(self, identifier: str) -> Target:
        with self._lock:
            try:
                return self._targets[identifier]
            except KeyError:
                raise NotFoundError(identifier) from None

    def list(self) -> Dict[str, Target]:
        """Return a snapshot of every registered target."""

        with self._lock:
            return dict(self._targets)

    def clear(self) -> None:
        with self._lock:
            self._targets.clear()

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._targets

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)


__all__ = ["Registry", "Target", "parse_upstream"]
