"""Registry and proxy dispatch services."""
from .dispatcher import Dispatcher, ProxyPath, build_upstream_url, parse_proxy_path
from .errors import (
    DispatchError,
    InvalidIdentifierError,
    NotFoundError,
    ParseError,
    RegistryError,
    ReverserError,
    UpstreamUnreachableError,
)
from .registry import Registry, Target

__all__ = [
    "DispatchError",
    "Dispatcher",
    "InvalidIdentifierError",
    "NotFoundError",
    "ParseError",
    "ProxyPath",
    "Registry",
    "RegistryError",
    "ReverserError",
    "Target",
    "UpstreamUnreachableError",
    "build_upstream_url",
    "parse_proxy_path",
]
