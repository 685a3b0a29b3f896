"""Network data plane: toxic chains applied to proxied TCP connections."""

from .chain import ToxicChain
from .errors import (
    Conflict,
    InvalidRequest,
    InvalidToxic,
    IOFailure,
    NotFound,
    ProxyExists,
    ToxicExists,
    ToxiproxyError,
)
from .link import Link, LinkState
from .proxy import Proxy, ProxyState
from .toxics import TOXIC_TYPES, Toxic, ToxicContext, build_toxic

__all__ = [
    "Conflict",
    "InvalidRequest",
    "InvalidToxic",
    "IOFailure",
    "Link",
    "LinkState",
    "NotFound",
    "Proxy",
    "ProxyExists",
    "ProxyState",
    "TOXIC_TYPES",
    "Toxic",
    "ToxicChain",
    "ToxicContext",
    "ToxicExists",
    "ToxiproxyError",
    "build_toxic",
]
