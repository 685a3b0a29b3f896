from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import random
import socket
import struct
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from network.chain import ToxicChain
from network.errors import IOFailure
from network.toxics import LinkSignal, Toxic, ToxicContext, ToxicTimeout

logger = logging.getLogger(__name__)

_link_ids = itertools.count(1)

CLOSE = "close"
ABORT = "abort"
RESET = "reset"

CLOSE_TIMEOUT = 2.0


class LinkState(str, Enum):
    CONNECTING = "connecting"
    PIPING = "piping"
    CLOSING = "closing"
    CLOSED = "closed"


def _reset_writer(writer: asyncio.StreamWriter) -> None:
    sock = writer.get_extra_info("socket")
    if sock is not None:
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.transport.abort()


class Link:
    """One proxied connection: a client socket, its upstream socket and two pumps.

    The upstream pump carries client bytes through the upstream chain, the
    downstream pump carries upstream bytes through the downstream chain. The
    first pump (or toxic timer) to finish decides how both sockets close:
    gracefully after a flush, aborted, or reset with a TCP RST.
    """

    def __init__(
        self,
        proxy_name: str,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream: Tuple[str, int],
        upstream_chain: ToxicChain,
        downstream_chain: ToxicChain,
        rng: Optional[random.Random] = None,
        read_size: int = 32768,
        on_closed: Optional[Callable[["Link"], None]] = None,
    ) -> None:
        self.id = next(_link_ids)
        self.proxy_name = proxy_name
        self.upstream = upstream
        self.read_size = read_size
        self.state = LinkState.CONNECTING
        self.close_mode: Optional[str] = None
        self.error: Optional[IOFailure] = None
        self.context = ToxicContext(rng)
        self.peer = client_writer.get_extra_info("peername")

        self._client_reader = client_reader
        self._client_writer = client_writer
        self._upstream_reader: Optional[asyncio.StreamReader] = None
        self._upstream_writer: Optional[asyncio.StreamWriter] = None
        self._chains = (upstream_chain, downstream_chain)
        self._on_closed = on_closed
        self._stop = asyncio.Event()
        self._closed = asyncio.Event()
        self._pumps: List[asyncio.Task] = []
        self._watchers: Dict[Toxic, asyncio.Task] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __repr__(self) -> str:
        return f"<Link {self.proxy_name}#{self.id} {self.state.value}>"

    def close(self, mode: str = ABORT) -> None:
        """Request teardown; the first requested mode wins."""
        if self.close_mode is None:
            self.close_mode = mode
        self._stop.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            if not await self._connect():
                return
            self.state = LinkState.PIPING
            logger.debug("[Link] %s#%d piping %s <-> %s:%d", self.proxy_name, self.id, self.peer, *self.upstream)

            upstream_chain, downstream_chain = self._chains
            for chain in self._chains:
                chain.subscribe(self._on_chain_changed)
            self._pumps = [
                asyncio.create_task(self._pump(self._client_reader, self._upstream_writer, upstream_chain)),
                asyncio.create_task(self._pump(self._upstream_reader, self._client_writer, downstream_chain)),
            ]
            self._sync_watchers()

            stop_waiter = asyncio.create_task(self._stop.wait())
            try:
                done, _ = await asyncio.wait({*self._pumps, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop_waiter.cancel()
            for task in done:
                if task is not stop_waiter:
                    self._record_outcome(task)
        finally:
            await self._teardown()

    # ------------------------------------------------------------------ #
    # Connection                                                         #
    # ------------------------------------------------------------------ #
    async def _connect(self) -> bool:
        host, port = self.upstream
        connect = asyncio.create_task(asyncio.open_connection(host, port))
        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({connect, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

        if not connect.done():
            connect.cancel()
            await asyncio.gather(connect, return_exceptions=True)
            return False
        try:
            self._upstream_reader, self._upstream_writer = connect.result()
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("[Link] %s#%d failed to connect upstream %s:%d: %s", self.proxy_name, self.id, host, port, exc)
            self.error = IOFailure(f"upstream {host}:{port} unreachable: {exc}")
            self.close(ABORT)
            return False
        if self._stop.is_set():
            return False
        return True

    # ------------------------------------------------------------------ #
    # Pumps                                                              #
    # ------------------------------------------------------------------ #
    async def _pump(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, chain: ToxicChain) -> None:
        while True:
            data = await reader.read(self.read_size)
            if not data:
                break
            async for piece in chain.apply(data, self.context):
                writer.write(piece)
                await writer.drain()
        await chain.apply_close(self.context)

    def _record_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self.close(CLOSE)
        elif isinstance(exc, LinkSignal):
            logger.info("[Link] %s#%d %s", self.proxy_name, self.id, exc)
            self.close(exc.mode)
        elif isinstance(exc, (OSError, asyncio.IncompleteReadError)):
            logger.debug("[Link] %s#%d I/O failure: %s", self.proxy_name, self.id, exc)
            self.error = IOFailure(str(exc))
            self.close(ABORT)
        else:
            logger.error("[Link] %s#%d pump crashed: %r", self.proxy_name, self.id, exc)
            self.close(ABORT)

    # ------------------------------------------------------------------ #
    # Connection-level toxic timers                                      #
    # ------------------------------------------------------------------ #
    def _on_chain_changed(self, chain: ToxicChain) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._sync_watchers)

    def _sync_watchers(self) -> None:
        if self.state is not LinkState.PIPING:
            return
        current: Set[Toxic] = set()
        for chain in self._chains:
            for toxic in chain.snapshot():
                delay = toxic.timer()
                if delay is None or not self.context.state_for(toxic).active:
                    continue
                current.add(toxic)
                if toxic not in self._watchers:
                    task = asyncio.create_task(self._watch(toxic, delay))
                    task.add_done_callback(self._on_watcher_done)
                    self._watchers[toxic] = task
        for toxic in list(self._watchers):
            if toxic not in current:
                self._watchers.pop(toxic).cancel()

    async def _watch(self, toxic: Toxic, delay: float) -> None:
        await asyncio.sleep(delay)
        raise ToxicTimeout(toxic.name)

    def _on_watcher_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, LinkSignal):
            logger.info("[Link] %s#%d %s", self.proxy_name, self.id, exc)
            self.close(exc.mode)

    # ------------------------------------------------------------------ #
    # Teardown                                                           #
    # ------------------------------------------------------------------ #
    async def _teardown(self) -> None:
        self.state = LinkState.CLOSING
        for chain in self._chains:
            chain.unsubscribe(self._on_chain_changed)

        tasks = [*self._pumps, *self._watchers.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchers.clear()

        mode = self.close_mode or ABORT
        writers = [w for w in (self._client_writer, self._upstream_writer) if w is not None]
        for writer in writers:
            if mode == RESET:
                _reset_writer(writer)
            elif mode == ABORT:
                writer.transport.abort()
            else:
                writer.close()
        for writer in writers:
            try:
                await asyncio.wait_for(writer.wait_closed(), CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                # Peer stopped reading; drop what is left in the buffer.
                writer.transport.abort()
            except OSError:
                pass

        self.state = LinkState.CLOSED
        self._closed.set()
        logger.debug("[Link] %s#%d closed (%s)", self.proxy_name, self.id, mode)
        if self._on_closed:
            self._on_closed(self)
