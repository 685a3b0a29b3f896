from __future__ import annotations

import asyncio
import errno
import logging
import random
import socket
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from network.chain import ToxicChain
from network.errors import InvalidRequest, NotFound, ProxyExists
from network.link import ABORT, Link
from network.toxics import DOWNSTREAM, STREAMS, UPSTREAM, Toxic

logger = logging.getLogger(__name__)


def parse_address(address: Any) -> Tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` allowed) into its parts."""
    if not isinstance(address, str) or ":" not in address:
        raise InvalidRequest(f"Address must look like host:port, got {address!r}")
    host, _, port = address.rpartition(":")
    host = host.strip("[]")
    try:
        port_number = int(port)
    except ValueError:
        raise InvalidRequest(f"Invalid port in address {address!r}") from None
    if not 0 <= port_number <= 65535 or not host:
        raise InvalidRequest(f"Invalid address {address!r}")
    return host, port_number


def format_address(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class ProxyState(str, Enum):
    CREATED = "created"
    LISTENING = "listening"
    DISABLED = "disabled"
    DESTROYED = "destroyed"


class Proxy:
    """Named TCP listener forwarding every connection upstream through two toxic chains."""

    def __init__(
        self,
        name: str,
        listen: str,
        upstream: str,
        rng: Optional[random.Random] = None,
        read_size: int = 32768,
    ) -> None:
        parse_address(listen)
        parse_address(upstream)
        self.name = name
        self.listen = listen
        self.upstream = upstream
        self.state = ProxyState.CREATED
        self.read_size = read_size
        self.toxic_chains: Dict[str, ToxicChain] = {stream: ToxicChain(stream) for stream in STREAMS}
        self._rng = rng or random.Random()
        self._server: Optional[asyncio.AbstractServer] = None
        self._links: Set[Link] = set()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Proxy {self.name} {self.listen} -> {self.upstream} {self.state.value}>"

    @property
    def enabled(self) -> bool:
        return self.state is ProxyState.LISTENING

    @property
    def links(self) -> List[Link]:
        return list(self._links)

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        async with self._lock:
            await self._start()

    async def _start(self) -> None:
        if self.state is ProxyState.LISTENING:
            return
        if self.state is ProxyState.DESTROYED:
            raise NotFound(f"proxy {self.name} was deleted")
        host, port = parse_address(self.listen)
        try:
            # A name like localhost resolves to several addresses; bind only the first.
            infos = await asyncio.get_running_loop().getaddrinfo(
                host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
            bind_host = infos[0][4][0]
            self._server = await asyncio.start_server(self._handle_client, host=bind_host, port=port)
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                raise ProxyExists(f"listen address {self.listen} is already in use") from exc
            raise InvalidRequest(f"cannot listen on {self.listen}: {exc}") from exc
        bound_host, bound_port = self._server.sockets[0].getsockname()[:2]
        self.listen = format_address(bound_host, bound_port)
        self.state = ProxyState.LISTENING
        logger.info("[Proxy] %s listening on %s -> %s", self.name, self.listen, self.upstream)

    async def _stop(self, final_state: ProxyState) -> None:
        if self.state is ProxyState.DESTROYED:
            return
        server, self._server = self._server, None
        was_listening = self.state is ProxyState.LISTENING
        self.state = final_state
        if server is not None:
            server.close()
        links = list(self._links)
        for link in links:
            link.close(ABORT)
        if links:
            await asyncio.gather(*(link.wait_closed() for link in links))
        if server is not None:
            await server.wait_closed()
        if was_listening:
            logger.info("[Proxy] %s %s (%d links torn down)", self.name, final_state.value, len(links))

    async def enable(self) -> None:
        await self.start()

    async def disable(self) -> None:
        """Take the proxy down: stop listening and abort every live link."""
        async with self._lock:
            await self._stop(ProxyState.DISABLED)

    async def destroy(self) -> None:
        async with self._lock:
            await self._stop(ProxyState.DESTROYED)

    async def update(
        self,
        listen: Optional[str] = None,
        upstream: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        """Apply new addresses and/or enabled flag; a new listen address rebinds."""
        if enabled is not None and not isinstance(enabled, bool):
            raise InvalidRequest(f"enabled must be a boolean, got {enabled!r}")
        async with self._lock:
            if upstream is not None and upstream != self.upstream:
                parse_address(upstream)
                logger.info("[Proxy] %s upstream %s -> %s", self.name, self.upstream, upstream)
                self.upstream = upstream
            if listen is not None and listen != self.listen:
                parse_address(listen)
                was_enabled = self.enabled
                await self._stop(ProxyState.DISABLED)
                previous, self.listen = self.listen, listen
                if was_enabled or enabled:
                    try:
                        await self._start()
                    except Exception:
                        self.listen = previous
                        if was_enabled:
                            await self._start()
                        raise
            if enabled is True:
                await self._start()
            elif enabled is False:
                await self._stop(ProxyState.DISABLED)

    # ------------------------------------------------------------------ #
    # Connections                                                        #
    # ------------------------------------------------------------------ #
    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.state is not ProxyState.LISTENING:
            writer.transport.abort()
            return
        link = Link(
            proxy_name=self.name,
            client_reader=reader,
            client_writer=writer,
            upstream=parse_address(self.upstream),
            upstream_chain=self.toxic_chains[UPSTREAM],
            downstream_chain=self.toxic_chains[DOWNSTREAM],
            rng=self._rng,
            read_size=self.read_size,
            on_closed=self._links.discard,
        )
        self._links.add(link)
        logger.debug("[Proxy] %s accepted connection from %s", self.name, link.peer)
        await link.run()

    # ------------------------------------------------------------------ #
    # Toxics                                                             #
    # ------------------------------------------------------------------ #
    def toxics(self, stream: Optional[str] = None) -> List[Toxic]:
        if stream is not None:
            return self.chain(stream).list()
        return [toxic for chain in self.toxic_chains.values() for toxic in chain.list()]

    def chain(self, stream: str) -> ToxicChain:
        try:
            return self.toxic_chains[stream]
        except KeyError:
            raise InvalidRequest(f"Toxic direction must be one of: [{', '.join(STREAMS)}], got: {stream}") from None

    def add_toxic(self, toxic: Toxic) -> Toxic:
        added = self.chain(toxic.stream).add(toxic)
        logger.info("[Proxy] %s added %s toxic %s on %s", self.name, toxic.type_name, toxic.name, toxic.stream)
        return added

    def find_toxic(self, name: str, stream: Optional[str] = None) -> Toxic:
        return self._chain_holding(name, stream).get(name)

    def update_toxic(
        self,
        name: str,
        stream: Optional[str] = None,
        toxicity: Optional[float] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Toxic:
        updated = self._chain_holding(name, stream).update(name, toxicity=toxicity, attributes=attributes)
        logger.info("[Proxy] %s updated toxic %s", self.name, name)
        return updated

    def remove_toxic(self, name: str, stream: Optional[str] = None) -> Toxic:
        removed = self._chain_holding(name, stream).remove(name)
        logger.info("[Proxy] %s removed toxic %s from %s", self.name, name, removed.stream)
        return removed

    def reset_toxics(self) -> None:
        for chain in self.toxic_chains.values():
            chain.clear()

    def _chain_holding(self, name: str, stream: Optional[str]) -> ToxicChain:
        if stream is not None:
            return self.chain(stream)
        # Downstream first: a name present in both directions resolves to downstream.
        for candidate in (DOWNSTREAM, UPSTREAM):
            chain = self.toxic_chains[candidate]
            if name in chain:
                return chain
        raise NotFound(f"toxic {name} not found on proxy {self.name}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "listen": self.listen,
            "upstream": self.upstream,
            "enabled": self.enabled,
            "toxics": [toxic.to_dict() for toxic in self.toxics()],
        }
