import asyncio
import signal
import logging
import sys

from config import load_settings_conf, SettingsError
from indexer import SyncOrchestrator, create_context, close_context

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def install_shutdown_handlers(orchestrator: SyncOrchestrator) -> None:
    """Stop the orchestrator gracefully on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def handle_shutdown():
        logger.info("Shutdown signal received. Cleaning up...")
        loop.create_task(orchestrator.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle_shutdown)
        except NotImplementedError:
            # Not supported by the event loop on this platform
            signal.signal(signum, lambda *_: handle_shutdown())

async def main() -> int:
    """Main application entry point."""
    try:
        settings = load_settings_conf()
    except SettingsError as e:
        logger.error(str(e))
        return 1

    logger.info("Connecting to record store and chain node...")
    try:
        context = await create_context(settings)
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}")
        return 1

    orchestrator = SyncOrchestrator(context)
    install_shutdown_handlers(orchestrator)

    try:
        await orchestrator.start()
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1
    finally:
        await close_context(context)

def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    run()
