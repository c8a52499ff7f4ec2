"""Entry point for launching the settlement API server."""

from __future__ import annotations

import argparse

import uvicorn

from ..config.settings import get_app_config
from ..execution.transaction_builder import create_composer
from ..monitoring import bootstrap_observability
from .app import create_api_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Solana rewards settlement API")
    parser.add_argument("--host", help="Override API host")
    parser.add_argument("--port", type=int, help="Override API port")
    args = parser.parse_args()

    config = get_app_config()
    bootstrap_observability(config=config)
    composer = create_composer(config)
    app = create_api_app(composer, config=config)
    host = args.host or config.api.host
    port = args.port or config.api.port
    uvicorn.run(app, host=host, port=port, log_level=config.monitoring.log_level.lower())


if __name__ == "__main__":
    main()
