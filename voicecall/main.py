"""Service entry point: connect to the bridge and track calls until signalled."""

import asyncio
import signal

import structlog

from voicecall.config import load_config, validate_production_config
from voicecall.core.event_manager import EventManager, LoggingCallEventHandler
from voicecall.errors import TransportError
from voicecall.health import HealthServer
from voicecall.logging_config import configure_logging

logger = structlog.get_logger(__name__)


async def main(config_path=None):
    config = load_config(config_path) if config_path else load_config()
    configure_logging(log_level=config.logging.level.upper())

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("Configuration validation failed", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed", api_url=config.bridge.api_url)

    manager = EventManager.from_config(config, handler=LoggingCallEventHandler())
    try:
        await manager.client.wait_until_healthy()
    except TransportError as e:
        logger.error("Bridge not reachable; giving up", error=str(e))
        await manager.client.close()
        raise

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    health = None
    try:
        if config.health.enabled:
            health = HealthServer(manager, host=config.health.host, port=config.health.port)
            await health.start()
        async with manager:
            await shutdown_event.wait()
    finally:
        if health is not None:
            await health.stop()
        # Owned client; already closed by manager.stop() unless startup failed
        await manager.client.close()


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Voicecall bridge has shut down.")


if __name__ == "__main__":
    run()
