from __future__ import annotations

import logging
import threading
from typing import Any, AsyncIterator, Callable, List, Mapping, Optional, Tuple

from network.errors import InvalidToxic, NotFound, ToxicExists
from network.toxics import STREAMS, Toxic, ToxicContext

logger = logging.getLogger(__name__)

ChainListener = Callable[["ToxicChain"], None]


async def _compose(
    toxics: Tuple[Toxic, ...],
    index: int,
    data: bytes,
    context: ToxicContext,
) -> AsyncIterator[bytes]:
    if index == len(toxics):
        if data:
            yield data
        return
    async for piece in toxics[index].process(data, context):
        if not piece:
            continue
        async for out in _compose(toxics, index + 1, piece, context):
            yield out


class ToxicChain:
    """Ordered toxics of one direction of a proxy.

    Mutations swap in a new tuple under a short lock; readers grab the current
    tuple without locking, so byte I/O never waits on a mutation and a running
    ``apply`` keeps the snapshot it started with.
    """

    def __init__(self, stream: str) -> None:
        if stream not in STREAMS:
            raise InvalidToxic(f"Toxic direction must be one of: [{', '.join(STREAMS)}], got: {stream}")
        self.stream = stream
        self._toxics: Tuple[Toxic, ...] = ()
        self._lock = threading.Lock()
        self._listeners: List[ChainListener] = []

    def __len__(self) -> int:
        return len(self._toxics)

    def snapshot(self) -> Tuple[Toxic, ...]:
        return self._toxics

    def list(self) -> List[Toxic]:
        return list(self._toxics)

    def get(self, name: str) -> Toxic:
        for toxic in self._toxics:
            if toxic.name == name:
                return toxic
        raise NotFound(f"toxic {name} not found on {self.stream}")

    def __contains__(self, name: object) -> bool:
        return any(toxic.name == name for toxic in self._toxics)

    # ------------------------------------------------------------------ #
    # Mutation                                                           #
    # ------------------------------------------------------------------ #
    def add(self, toxic: Toxic) -> Toxic:
        if toxic.stream != self.stream:
            raise InvalidToxic(f"Toxic {toxic.name} targets {toxic.stream}, not {self.stream}")
        with self._lock:
            if any(existing.name == toxic.name for existing in self._toxics):
                raise ToxicExists(f"toxic {toxic.name} already exists on {self.stream}")
            self._toxics = self._toxics + (toxic,)
        logger.debug("[Chain] Added %s toxic %s on %s", toxic.type_name, toxic.name, self.stream)
        self._notify()
        return toxic

    def update(
        self,
        name: str,
        toxicity: Optional[float] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Toxic:
        with self._lock:
            toxics = list(self._toxics)
            for index, toxic in enumerate(toxics):
                if toxic.name == name:
                    break
            else:
                raise NotFound(f"toxic {name} not found on {self.stream}")
            replacement = toxic.updated(toxicity=toxicity, attributes=attributes)
            toxics[index] = replacement
            self._toxics = tuple(toxics)
        logger.debug("[Chain] Updated toxic %s on %s", name, self.stream)
        self._notify()
        return replacement

    def remove(self, name: str) -> Toxic:
        with self._lock:
            remaining = tuple(toxic for toxic in self._toxics if toxic.name != name)
            if len(remaining) == len(self._toxics):
                raise NotFound(f"toxic {name} not found on {self.stream}")
            removed = next(toxic for toxic in self._toxics if toxic.name == name)
            self._toxics = remaining
        logger.debug("[Chain] Removed toxic %s from %s", name, self.stream)
        self._notify()
        return removed

    def clear(self) -> None:
        with self._lock:
            if not self._toxics:
                return
            self._toxics = ()
        self._notify()

    # ------------------------------------------------------------------ #
    # Listeners                                                          #
    # ------------------------------------------------------------------ #
    def subscribe(self, listener: ChainListener) -> None:
        with self._lock:
            self._listeners = self._listeners + [listener]

    def unsubscribe(self, listener: ChainListener) -> None:
        with self._lock:
            self._listeners = [existing for existing in self._listeners if existing is not listener]

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener(self)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("[Chain] Listener failed on %s: %s", self.stream, exc)

    # ------------------------------------------------------------------ #
    # Application                                                        #
    # ------------------------------------------------------------------ #
    async def apply(self, data: bytes, context: ToxicContext) -> AsyncIterator[bytes]:
        """Pipe ``data`` through every toxic in declared order."""
        async for piece in _compose(self._toxics, 0, data, context):
            yield piece

    async def apply_close(self, context: ToxicContext) -> None:
        """Run the close hooks (slow_close) of every active toxic, in order."""
        for toxic in self._toxics:
            state = context.state_for(toxic)
            if state.active:
                await toxic.on_close(state)
