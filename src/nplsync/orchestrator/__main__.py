#!/usr/bin/env python3
"""Process entrypoint for the NPL to ThingsBoard sync service.

Usage:
    python -m nplsync.orchestrator
    nplsync                      # console script

Exit status is 1 on configuration errors (including queue declaration
conflicts), an unreachable broker at startup, or an event stream that
could not be restored within RECONNECT_MAX_ATTEMPTS.
"""
import asyncio
import logging
import signal
import sys

from ..api.exceptions import BrokerError, ConfigurationError, ReconnectExhaustedError
from ..api.redaction import redact_text
from .config import SyncConfig
from .service import build_orchestrator

logger = logging.getLogger(__name__)


async def _serve(config: SyncConfig) -> None:
    orchestrator = build_orchestrator(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, orchestrator.request_shutdown)

    await orchestrator.run()


def main() -> int:
    try:
        config = SyncConfig.from_env()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        return 1

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logger.info("=" * 60)
    logger.info("NPL -> ThingsBoard Sync Service")
    logger.info("=" * 60)

    try:
        asyncio.run(_serve(config))
    except ReconnectExhaustedError as e:
        logger.error(f"Fatal: {e.message}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Fatal configuration error: {e}")
        return 1
    except BrokerError as e:
        logger.error(f"Fatal broker error: {redact_text(str(e))}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
