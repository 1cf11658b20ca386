"""Request-scoped logging helpers and in-memory milestone store."""
from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping

CORRELATION_HEADER = "x-correlation-id"


class RequestLogStore:
    """Bounded in-memory store so engineers can inspect proxy milestones."""

    def __init__(self, max_requests: int = 1000) -> None:
        self.max_requests = max_requests
        self._lock = threading.Lock()
        self._records: "OrderedDict[str, List[Mapping[str, Any]]]" = OrderedDict()

    def append(self, request_id: str, entry: Mapping[str, Any]) -> None:
        with self._lock:
            entries = self._records.setdefault(request_id, [])
            entries.append(entry)
            self._records.move_to_end(request_id)
            while len(self._records) > self.max_requests:
                self._records.popitem(last=False)

    def get(self, request_id: str) -> List[Mapping[str, Any]]:
        with self._lock:
            return list(self._records.get(request_id, []))

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


@dataclass
class RequestContext:
    """State bag that injects IDs into every log line for a proxied request."""

    store: RequestLogStore = field(repr=False)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    identifier: str | None = None
    upstream: str | None = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], store: RequestLogStore) -> "RequestContext":
        request_id = headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        return cls(store=store, request_id=request_id)

    def with_identifier(self, identifier: str | None) -> "RequestContext":
        if identifier:
            self.identifier = identifier
        return self

    def with_upstream(self, upstream: str | None) -> "RequestContext":
        if upstream:
            self.upstream = upstream
        return self

    def extra(self, **fields: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"request_id": self.request_id}
        if self.identifier:
            payload["identifier"] = self.identifier
        if self.upstream:
            payload["upstream"] = self.upstream
        for key, value in fields.items():
            if value is not None:
                payload[key] = value
        return payload

    def log(
        self,
        logger: logging.Logger,
        level: int,
        message: str,
        *,
        exc_info: bool | BaseException | None = None,
        **fields: Any,
    ) -> None:
        extra_payload = self.extra(**fields)
        logger.log(level, message, extra=extra_payload, exc_info=exc_info)
        self.store.append(
            self.request_id,
            {
                "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                "level": logging.getLevelName(level),
                "message": message,
                "extra": extra_payload,
            },
        )

    def info(self, logger: logging.Logger, message: str, **fields: Any) -> None:
        self.log(logger, logging.INFO, message, **fields)

    def warning(self, logger: logging.Logger, message: str, *, exc_info: bool | BaseException | None = None, **fields: Any) -> None:
        self.log(logger, logging.WARNING, message, exc_info=exc_info, **fields)


__all__ = ["CORRELATION_HEADER", "RequestContext", "RequestLogStore"]
