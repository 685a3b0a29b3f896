"""Toxic variants: the fault-injection transforms applied to one traffic direction.

Every toxic is a dataclass whose non-base fields are its wire ``attributes``.
Types are resolved when a toxic is attached (``build_toxic``) so an unknown
type or a malformed attribute fails at that point and never mid-stream.

Toxicity sampling granularity per type:

* ``latency``, ``bandwidth``, ``slicer``: rolled for every chunk.
* ``timeout``, ``reset_peer``, ``slow_close``, ``limit_data``: rolled once per
  connection, the first time a link meets that toxic instance.
"""

from __future__ import annotations

import asyncio
import logging
import random
import weakref
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Dict, Mapping, Optional, Type

from network.errors import InvalidToxic

logger = logging.getLogger(__name__)

UPSTREAM = "upstream"
DOWNSTREAM = "downstream"
STREAMS = (UPSTREAM, DOWNSTREAM)

_BASE_FIELDS = ("name", "stream", "toxicity")


class Sampling(str, Enum):
    CHUNK = "chunk"
    CONNECTION = "connection"


class LinkSignal(Exception):
    """Raised by a toxic to end the link it runs in."""

    mode = "close"

    def __init__(self, toxic: str) -> None:
        super().__init__(f"{self.mode} requested by toxic {toxic!r}")
        self.toxic = toxic


class ToxicClose(LinkSignal):
    mode = "close"


class ToxicTimeout(LinkSignal):
    mode = "abort"


class ToxicReset(LinkSignal):
    mode = "reset"


@dataclass
class ToxicState:
    """Per-link state of one toxic instance."""

    active: bool = True
    bytes_seen: int = 0


class ToxicContext:
    """Per-link view of the toxics: the random source and every toxic's state.

    States are keyed weakly by toxic instance, so a detached or replaced toxic
    drops its state once no snapshot references it anymore.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()
        self._states: "weakref.WeakKeyDictionary[Toxic, ToxicState]" = weakref.WeakKeyDictionary()

    def state_for(self, toxic: "Toxic") -> ToxicState:
        state = self._states.get(toxic)
        if state is None:
            state = toxic.new_state(self.rng)
            self._states[toxic] = state
        return state


@dataclass(eq=False)
class Toxic:
    type_name: ClassVar[str] = "noop"
    sampling: ClassVar[Sampling] = Sampling.CHUNK

    name: str
    stream: str = DOWNSTREAM
    toxicity: float = 1.0

    @property
    def attributes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name not in _BASE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type_name,
            "stream": self.stream,
            "toxicity": self.toxicity,
            "attributes": self.attributes,
        }

    def roll(self, rng: random.Random) -> bool:
        return rng.random() < self.toxicity

    def new_state(self, rng: random.Random) -> ToxicState:
        if self.sampling is Sampling.CONNECTION:
            return ToxicState(active=self.roll(rng))
        return ToxicState()

    def timer(self) -> Optional[float]:
        """Seconds after which an active instance ends the link, if any."""
        return None

    async def process(self, data: bytes, context: ToxicContext) -> AsyncIterator[bytes]:
        state = context.state_for(self)
        if self.sampling is Sampling.CHUNK:
            active = self.roll(context.rng)
        else:
            active = state.active
        if not active:
            yield data
            return
        async for piece in self.pipe(data, state, context.rng):
            yield piece

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        yield data

    async def on_close(self, state: ToxicState) -> None:
        return None

    def updated(
        self,
        toxicity: Optional[float] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> "Toxic":
        """Return a fresh instance with replaced attributes and/or toxicity."""
        return type(self).from_attributes(
            name=self.name,
            stream=self.stream,
            toxicity=self.toxicity if toxicity is None else toxicity,
            attributes=self.attributes if attributes is None else attributes,
        )

    @classmethod
    def from_attributes(
        cls,
        name: str,
        stream: str,
        toxicity: Any,
        attributes: Mapping[str, Any],
    ) -> "Toxic":
        allowed = {f.name for f in fields(cls) if f.name not in _BASE_FIELDS}
        unknown = sorted(set(attributes) - allowed)
        if unknown:
            raise InvalidToxic(f"Unknown attributes for {cls.type_name} toxic: {', '.join(unknown)}")
        values: Dict[str, int] = {}
        for key, value in attributes.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidToxic(f"Attribute {key!r} of {cls.type_name} toxic must be a number, got {value!r}")
            if value < 0:
                raise InvalidToxic(f"Attribute {key!r} of {cls.type_name} toxic must not be negative")
            if isinstance(value, float) and not value.is_integer():
                raise InvalidToxic(f"Attribute {key!r} of {cls.type_name} toxic must be a whole number, got {value}")
            values[key] = int(value)
        return cls(name=name, stream=_parse_stream(stream), toxicity=_parse_toxicity(toxicity), **values)


@dataclass(eq=False)
class LatencyToxic(Toxic):
    """Delay every chunk by ``latency`` ms plus or minus ``jitter`` ms."""

    type_name: ClassVar[str] = "latency"

    latency: int = 0
    jitter: int = 0

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        delay = float(self.latency)
        if self.jitter:
            delay += rng.uniform(-self.jitter, self.jitter)
        if delay > 0:
            await asyncio.sleep(delay / 1000.0)
        yield data


@dataclass(eq=False)
class BandwidthToxic(Toxic):
    """Throttle to ``rate`` KB/s by releasing 100 ms worth of bytes at a time."""

    type_name: ClassVar[str] = "bandwidth"

    rate: int = 0

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        if self.rate <= 0:
            yield data
            return
        bytes_per_second = self.rate * 1000
        step = self.rate * 100
        for offset in range(0, len(data), step):
            piece = data[offset:offset + step]
            await asyncio.sleep(len(piece) / bytes_per_second)
            yield piece


@dataclass(eq=False)
class SlicerToxic(Toxic):
    """Split chunks into ``average_size`` ± ``size_variation`` byte pieces, ``delay`` µs apart."""

    type_name: ClassVar[str] = "slicer"

    average_size: int = 0
    size_variation: int = 0
    delay: int = 0

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        if self.average_size <= 0:
            yield data
            return
        offset = 0
        while offset < len(data):
            size = self.average_size
            if self.size_variation:
                size += rng.randint(-self.size_variation, self.size_variation)
            size = max(1, size)
            yield data[offset:offset + size]
            offset += size
            if offset < len(data) and self.delay:
                await asyncio.sleep(self.delay / 1_000_000.0)


@dataclass(eq=False)
class TimeoutToxic(Toxic):
    """Swallow all data; after ``timeout`` ms (0 = never) drop the connection."""

    type_name: ClassVar[str] = "timeout"
    sampling: ClassVar[Sampling] = Sampling.CONNECTION

    timeout: int = 0

    def timer(self) -> Optional[float]:
        if self.timeout > 0:
            return self.timeout / 1000.0
        return None

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        logger.debug("[Toxic] %s dropped %d bytes", self.name, len(data))
        return
        yield  # pragma: no cover


@dataclass(eq=False)
class ResetPeerToxic(Toxic):
    """Reset the connection (TCP RST) ``timeout`` ms after the first chunk."""

    type_name: ClassVar[str] = "reset_peer"
    sampling: ClassVar[Sampling] = Sampling.CONNECTION

    timeout: int = 0

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        if self.timeout > 0:
            await asyncio.sleep(self.timeout / 1000.0)
        raise ToxicReset(self.name)
        yield  # pragma: no cover


@dataclass(eq=False)
class SlowCloseToxic(Toxic):
    """Hold the close of the stream for ``delay`` ms after EOF."""

    type_name: ClassVar[str] = "slow_close"
    sampling: ClassVar[Sampling] = Sampling.CONNECTION

    delay: int = 0

    async def on_close(self, state: ToxicState) -> None:
        if self.delay > 0:
            await asyncio.sleep(self.delay / 1000.0)


@dataclass(eq=False)
class LimitDataToxic(Toxic):
    """Close the connection once ``bytes`` bytes went through."""

    type_name: ClassVar[str] = "limit_data"
    sampling: ClassVar[Sampling] = Sampling.CONNECTION

    bytes: int = 0

    async def pipe(self, data: bytes, state: ToxicState, rng: random.Random) -> AsyncIterator[bytes]:
        remaining = self.bytes - state.bytes_seen
        if len(data) < remaining:
            state.bytes_seen += len(data)
            yield data
            return
        state.bytes_seen = self.bytes
        if remaining > 0:
            yield data[:remaining]
        raise ToxicClose(self.name)


TOXIC_TYPES: Dict[str, Type[Toxic]] = {
    cls.type_name: cls
    for cls in (
        LatencyToxic,
        BandwidthToxic,
        SlicerToxic,
        TimeoutToxic,
        ResetPeerToxic,
        SlowCloseToxic,
        LimitDataToxic,
    )
}
TOXIC_TYPES["reset"] = ResetPeerToxic


def _parse_stream(stream: Any) -> str:
    if stream not in STREAMS:
        raise InvalidToxic(f"Toxic stream must be one of: [{', '.join(STREAMS)}], got: {stream}")
    return stream


def _parse_toxicity(toxicity: Any) -> float:
    if isinstance(toxicity, bool) or not isinstance(toxicity, (int, float)):
        raise InvalidToxic(f"Toxicity must be a number, got {toxicity!r}")
    if not 0.0 <= toxicity <= 1.0:
        raise InvalidToxic(f"Toxicity must be between 0.0 and 1.0, got {toxicity}")
    return float(toxicity)


def build_toxic(payload: Mapping[str, Any], stream: Optional[str] = None) -> Toxic:
    """Resolve a toxic JSON payload into a validated toxic instance.

    ``stream`` overrides whatever the payload says, for direction-scoped routes.
    """
    if not isinstance(payload, Mapping):
        raise InvalidToxic("Toxic payload must be a JSON object")
    type_name = payload.get("type")
    toxic_cls = TOXIC_TYPES.get(type_name) if isinstance(type_name, str) else None
    if toxic_cls is None:
        raise InvalidToxic(f"Unknown toxic type: {type_name}")
    stream = _parse_stream(stream or payload.get("stream") or DOWNSTREAM)
    name = payload.get("name") or f"{toxic_cls.type_name}_{stream}"
    if not isinstance(name, str):
        raise InvalidToxic(f"Toxic name must be a string, got {name!r}")
    attributes = payload.get("attributes") or {}
    if not isinstance(attributes, Mapping):
        raise InvalidToxic("Toxic attributes must be a JSON object")
    toxicity = payload.get("toxicity")
    return toxic_cls.from_attributes(
        name=name,
        stream=stream,
        toxicity=1.0 if toxicity is None else toxicity,
        attributes=attributes,
    )
