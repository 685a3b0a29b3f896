from __future__ import annotations

import asyncio
import logging
import random
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from network.errors import InvalidRequest, NotFound, ProxyExists
from network.proxy import Proxy, parse_address

logger = logging.getLogger(__name__)


def _same_listen(left: str, right: str) -> bool:
    left_host, left_port = parse_address(left)
    right_host, right_port = parse_address(right)
    if left_port == 0 or right_port == 0:
        return False
    return left_port == right_port and (left_host == right_host or "localhost" in (left_host, right_host))


class ProxyRegistry:
    """Table of named proxies for one server process.

    Mutations are serialized by an asyncio lock; lookups read the current
    dict without taking it.
    """

    def __init__(self, seed: Optional[int] = None, read_size: int = 32768) -> None:
        self._proxies: Dict[str, Proxy] = {}
        self._lock = asyncio.Lock()
        self._rng = random.Random(seed)
        self.read_size = read_size

    def __len__(self) -> int:
        return len(self._proxies)

    def __contains__(self, name: object) -> bool:
        return name in self._proxies

    def find(self, name: str) -> Proxy:
        try:
            return self._proxies[name]
        except KeyError:
            raise NotFound(f"proxy {name} not found") from None

    def list(self) -> List[Proxy]:
        return list(self._proxies.values())

    def grep(self, pattern: str) -> List[Proxy]:
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            raise InvalidRequest(f"invalid pattern {pattern!r}: {exc}") from exc
        return [proxy for proxy in self._proxies.values() if regex.search(proxy.name)]

    async def create(
        self,
        name: str,
        upstream: str,
        listen: str = "localhost:0",
        enabled: bool = True,
    ) -> Proxy:
        async with self._lock:
            return await self._create(name, upstream, listen, enabled)

    async def _create(self, name: str, upstream: str, listen: str, enabled: bool) -> Proxy:
        if not isinstance(name, str) or not name:
            raise InvalidRequest("proxy name is required")
        if name in self._proxies:
            raise ProxyExists(f"proxy {name} already exists")
        parse_address(upstream)
        for other in self._proxies.values():
            if _same_listen(other.listen, listen):
                raise ProxyExists(f"listen address {listen} is already used by proxy {other.name}")

        proxy = Proxy(
            name=name,
            listen=listen,
            upstream=upstream,
            rng=random.Random(self._rng.random()),
            read_size=self.read_size,
        )
        if enabled:
            await proxy.start()
        self._proxies[name] = proxy
        logger.info("[Registry] Created proxy %s (%s -> %s)", name, proxy.listen, upstream)
        return proxy

    async def update(
        self,
        name: str,
        listen: Optional[str] = None,
        upstream: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> Proxy:
        async with self._lock:
            proxy = self.find(name)
            if listen is not None and listen != proxy.listen:
                parse_address(listen)
                for other in self._proxies.values():
                    if other is not proxy and _same_listen(other.listen, listen):
                        raise ProxyExists(f"listen address {listen} is already used by proxy {other.name}")
            await proxy.update(listen=listen, upstream=upstream, enabled=enabled)
        return proxy

    async def delete(self, name: str) -> None:
        async with self._lock:
            proxy = self.find(name)
            await proxy.destroy()
            del self._proxies[name]
        logger.info("[Registry] Deleted proxy %s", name)

    async def populate(self, configs: Sequence[Mapping[str, Any]]) -> List[Proxy]:
        """Create or replace a batch of proxies.

        A proxy whose listen and upstream are unchanged is kept with its toxics.
        """
        if not isinstance(configs, (list, tuple)):
            raise InvalidRequest("populate expects a list of proxies")
        created: List[Proxy] = []
        async with self._lock:
            for config in configs:
                if not isinstance(config, Mapping):
                    raise InvalidRequest("each proxy must be a JSON object")
                name = config.get("name")
                upstream = config.get("upstream")
                listen = config.get("listen") or "localhost:0"
                enabled = config.get("enabled", True)
                existing = self._proxies.get(name) if isinstance(name, str) else None
                if existing is not None:
                    if existing.upstream == upstream and _listen_matches(existing.listen, listen):
                        created.append(existing)
                        continue
                    await existing.destroy()
                    del self._proxies[name]
                created.append(await self._create(name, upstream, listen, enabled))
        return created

    async def reset(self) -> None:
        """Re-enable every proxy and strip all of their toxics."""
        async with self._lock:
            for proxy in self._proxies.values():
                proxy.reset_toxics()
                await proxy.enable()
        logger.info("[Registry] Reset %d proxies", len(self._proxies))

    async def close(self) -> None:
        async with self._lock:
            proxies = list(self._proxies.values())
            self._proxies.clear()
            for proxy in proxies:
                await proxy.destroy()
        logger.info("[Registry] Closed %d proxies", len(proxies))


def _listen_matches(current: str, requested: str) -> bool:
    if current == requested:
        return True
    _, requested_port = parse_address(requested)
    return requested_port == 0 or _same_listen(current, requested)
