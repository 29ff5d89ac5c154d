"""
FleetSync Edge Agent

Runs on each venue display device: keeps the playback playlist in step with
the event phase, executes allow-listed admin jobs and reports health to the
central registry.
"""

import asyncio
import logging
import signal
import sys

from fleetsync.utils.logger import setup_logging
from fleetsync.core import EdgeAgent

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


async def main():
    """Main entry point"""
    agent = EdgeAgent()
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    # Handle shutdown signals
    def signal_handler(sig):
        logger.info(f"Received signal {sig.name}")
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await agent.start()
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        await agent.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Agent stopped by user")
    except Exception as e:
        logger.error(f"Agent crashed: {e}", exc_info=True)
        sys.exit(1)
