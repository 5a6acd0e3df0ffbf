"""Entry point: ``python -m miragemod``."""

from __future__ import annotations

import asyncio
import logging
import sys

from .config import MirageConfig, load_config
from .console import fatal, setup_logging
from .dispatcher import FigmentDispatcher, StartupError
from .kilovolt import KilovoltClient, KilovoltError

logger = logging.getLogger(__name__)


async def _run(config: MirageConfig) -> None:
    client = KilovoltClient(config.endpoint, headers=config.headers, password=config.password)
    dispatcher = FigmentDispatcher(client, config)
    try:
        await dispatcher.start()
        await dispatcher.run()
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> None:
    config = load_config(argv)
    setup_logging(config.log_level)
    try:
        asyncio.run(_run(config))
    except StartupError as exc:
        fatal(str(exc))
        sys.exit(1)
    except KilovoltError as exc:
        logger.error("Stopping: %s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
