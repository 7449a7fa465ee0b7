"""Service entry point: ``voice-agent`` / ``python -m voice_agent.main``."""

import argparse
import asyncio
import signal

from dotenv import load_dotenv

from .config import load_config, validate_config
from .config.loaders import DEFAULT_CONFIG_PATH
from .logging_config import configure_logging, get_logger
from .server import VoiceAgentServer

logger = get_logger(__name__)


async def main(config_path: str = DEFAULT_CONFIG_PATH) -> None:
    config = load_config(config_path)
    configure_logging(
        log_level=config.logging.level,
        log_to_file=config.logging.to_file,
        log_file_path=config.logging.file_path,
    )

    errors, warnings = validate_config(config)
    if errors:
        logger.error("Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed")

    server = VoiceAgentServer(config)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await server.start()
    await shutdown_event.wait()
    logger.info("Shutting down", active_calls=len(server.store))
    await server.stop()


def run() -> None:
    parser = argparse.ArgumentParser(description="Plivo real-time voice agent")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to the YAML configuration file")
    args = parser.parse_args()

    load_dotenv()
    try:
        asyncio.run(main(args.config))
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Voice agent has shut down.")


if __name__ == "__main__":
    run()
