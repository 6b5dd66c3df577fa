import argparse
import asyncio
import logging
from typing import Optional, Sequence

from .config import ClientConfig, ServerConfig, load_or_create
from .crypto import derive_hwid
from .node import ChatClient, ChatServer

"""
run_node.py - single entry point for the chat service.

Modes:
- server:  bind the listener and serve until killed
- client:  connect, authenticate with this machine's HWID, chat on stdin
- hwid:    print this machine's HWID and exit

Settings come from the role's TOML file (see config.py); --host, --port and
--name override single values for one run without touching the file.
"""

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_server(config: ServerConfig) -> None:
    """Spin up the chat server and serve forever."""
    server = ChatServer(config)
    await server.start()


async def run_client(config: ClientConfig, hwid: str) -> None:
    """Start an interactive client until stdin closes or the server leaves."""
    client = ChatClient(config, hwid)
    await client.run()


def apply_overrides(config, args: argparse.Namespace):
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if getattr(args, "name", None) and hasattr(config, "name"):
        config.name = args.name
    return config


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Server:  hwchat --mode server --port 7878
      Client:  hwchat --mode client --name alice
      HWID:    hwchat --mode hwid
    """
    p = argparse.ArgumentParser(prog="hwchat")
    p.add_argument("--mode", choices=["server", "client", "hwid"], required=True)
    p.add_argument("--config", help="TOML config path (default: $HWCHAT_CONFIG or <role>_config.toml)")
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    p.add_argument("--name", help="display name (client mode)")
    p.add_argument("--log-level", default="INFO")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.mode == "hwid":
        print(derive_hwid())

    elif args.mode == "server":
        config = apply_overrides(load_or_create(ServerConfig, args.config), args)
        try:
            asyncio.run(run_server(config))
        except OSError as exc:
            raise SystemExit(f"Unable to bind {config.host}:{config.port}: {exc}")
        except KeyboardInterrupt:
            logger.info("Server stopped")

    elif args.mode == "client":
        config = apply_overrides(load_or_create(ClientConfig, args.config), args)
        try:
            asyncio.run(run_client(config, derive_hwid()))
        except (OSError, asyncio.TimeoutError) as exc:
            raise SystemExit(f"Unable to connect to {config.host}:{config.port}: {exc}")
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
