"""
Entry point for running guardian via `python -m guardian`.

Loads configuration, prints the mobile control links, and starts the
control API with uvicorn.
"""

import sys

import uvicorn

from .config import load_config
from .errors import ConfigError
from .main import create_app, setup_logging
from .network import build_mobile_urls


def main():
    """Run the guardian server."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"guardian startup error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    print("Mobile control URL:")
    for url in build_mobile_urls(config.bind, config.port, config.secret):
        print(f"  {url}")

    uvicorn.run(
        create_app(config),
        host=config.bind,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
