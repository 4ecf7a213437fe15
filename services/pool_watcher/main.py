import asyncio
import contextlib
import signal
import sys

from loguru import logger

from pool_watch_engine.chains.solana_gateway import SolanaGateway
from pool_watch_engine.config import AppSettings, load_settings
from pool_watch_engine.errors import ConfigError, RetryExhausted
from pool_watch_engine.pipeline import PipelineDriver
from pool_watch_engine.store import store_scope


def configure_logging(settings: AppSettings) -> None:
    logger.remove()
    logger.add(lambda m: print(m, end=""), level=settings.log_level)
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="10 MB", enqueue=True)


async def run(settings: AppSettings) -> None:
    gateway = SolanaGateway.create(settings)
    try:
        with store_scope(settings) as store:
            driver = PipelineDriver.create(settings, gateway, store)
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(sig, driver.request_stop)
            logger.info(
                "Watching {} for new pools ({} mode), writing {}",
                settings.amm_program_id,
                settings.strategy,
                settings.events_path,
            )
            stats = await driver.run()
            logger.info("Pool watcher stopped: {}", stats)
    finally:
        await gateway.close()


def main():
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("{}", e)
        sys.exit(2)
    configure_logging(settings)
    try:
        asyncio.run(run(settings))
    except RetryExhausted as e:
        logger.error("Pool watcher giving up: {}", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
