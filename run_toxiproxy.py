from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, Optional

from control.api import start_api
from control.config import load_server_config
from control.registry import ProxyRegistry

logger = logging.getLogger(__name__)


async def run_server(config: Dict[str, Any], stop_event: Optional[asyncio.Event] = None) -> None:
    registry = ProxyRegistry(
        seed=config.get("seed"),
        read_size=int(config.get("link", {}).get("read_size", 32768)),
    )

    try:
        proxies = config.get("proxies", [])
        if proxies:
            created = await registry.populate(proxies)
            logger.info("Populated %d proxies from configuration", len(created))
        runner = await start_api(registry, config["host"], int(config["port"]))
    except Exception:
        await registry.close()
        raise

    loop = asyncio.get_running_loop()
    stop_event = stop_event or asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received.")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signal handlers aren't available on some platforms (e.g., Windows event loop).
            pass

    try:
        await stop_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await runner.cleanup()
        await registry.close()
        logger.info("Server stopped")


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    config = load_server_config(args.config)
    if args.host is not None:
        config["host"] = args.host
    if args.port is not None:
        config["port"] = args.port
    if args.seed is not None:
        config["seed"] = args.seed
    if args.log_level is not None:
        config["logging"]["level"] = args.log_level
    return config


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the toxic TCP proxy server and its HTTP API.")
    parser.add_argument("--config", type=str, default=None, help="Path to a JSON server configuration file.")
    parser.add_argument("--host", type=str, default=None, help="Host the HTTP API binds to (default: localhost).")
    parser.add_argument("--port", type=int, default=None, help="Port the HTTP API binds to (default: 8474).")
    parser.add_argument("--seed", type=int, default=None, help="Seed for toxicity and jitter randomness.")
    parser.add_argument("--log-level", type=str, default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args()

    config = build_config(args)
    logging.basicConfig(level=getattr(logging, config.get("logging", {}).get("level", "INFO")))
    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
