"""bootherd agent - entry point."""

import argparse
import asyncio
import logging
import os


def main():
    parser = argparse.ArgumentParser(description="bootherd agent - local power control for one device")
    parser.add_argument(
        "--config",
        help="Path to the agent's TOML config (default: $BOOTHERD_AGENT_CONFIG or bootherd-agent.toml)",
    )
    args = parser.parse_args()

    # Settings read the path when they are first imported
    if args.config:
        os.environ["BOOTHERD_AGENT_CONFIG"] = args.config

    from bootherd.agent.config import settings
    from bootherd.agent.server import serve

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
