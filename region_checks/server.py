from __future__ import annotations

import os

import uvicorn

from region_checks.app import create_app
from region_checks.config import ProbeConfig, load_config
from region_checks.logging_setup import configure_logging


def serve(config: ProbeConfig) -> None:
    host = os.getenv("REGION_CHECKS_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("PORT", "8080"))
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())


def main() -> None:
    config = load_config()
    configure_logging(config.log_level, config.log_format)
    serve(config)


if __name__ == "__main__":
    main()
