"""Command-line entrypoint for running the media proxy."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.settings import ProxySettings, split_bind
from .app import create_app


LOGGER = structlog.get_logger("tubeproxy.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve cached audio fetched by an external downloader")
    parser.add_argument("bind", nargs="?", help="Listen address as host:port (default from TUBEPROXY_BIND)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    settings = ProxySettings()
    host, port = split_bind(args.bind) if args.bind else settings.listen_address
    app = create_app(settings)
    LOGGER.info("proxy_listening", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_config=None, access_log=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
