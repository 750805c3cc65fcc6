#!/usr/bin/env python3
"""
Roadside Dispatch - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Runs the dispatch engine service until interrupted.

- Compatible with PM2 process management
- Can be started, stopped, and restarted safely
- Live orders are recovered on restart

Configuration comes from the environment (or a .env file):
    DATABASE_URL, REDIS_URL, TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID,
    ORDER_SEARCH_TIMEOUT, MASTER_RESPONSE_TIMEOUT,
    MAX_ACTIVE_ORDERS_PER_CUSTOMER, MAX_DAILY_ORDERS_PER_CUSTOMER

============================================================
USAGE
============================================================
Direct execution:
    python app.py serve
    python app.py simulate --orders 20

With PM2:
    pm2 start app.py --interpreter python --name dispatch -- serve

============================================================
"""

import asyncio
import logging
import signal
import sys
from typing import List, Optional

from dispatch_engine.candidates import InMemoryCandidateSource
from dispatch_engine.cli import main as cli_main, setup_logging
from dispatch_engine.config import DispatchEngineConfig
from dispatch_engine.notifier import InMemoryNotifier
from dispatch_engine.service import DispatchService


logger = logging.getLogger("app")


# ============================================================
# SERVICE LOOP
# ============================================================

async def run_service() -> int:
    """
    Run the dispatch service until SIGINT/SIGTERM.

    Candidate search and offer delivery are in-memory here; a
    deployment injects its own CandidateSource and DispatchNotifier.
    """
    config = DispatchEngineConfig.from_env()
    service = DispatchService(
        candidates=InMemoryCandidateSource(),
        notifier=InMemoryNotifier(),
        config=config,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows
            pass

    try:
        recovered = await service.start()
        logger.info(f"Dispatch service running ({recovered} orders recovered)")
        await stop_event.wait()
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await service.stop()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv[:1] == ["serve"]:
        setup_logging("INFO")
        return asyncio.run(run_service())
    return cli_main(argv)


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
