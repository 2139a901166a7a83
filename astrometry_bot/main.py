import asyncio
import sys

from loguru import logger

from astrometry_bot.astrometry_client import AstrometryClient
from astrometry_bot.config import Settings
from astrometry_bot.handler import MessageHandler
from astrometry_bot.rate_limiter import RateLimiter
from astrometry_bot.server import BotServer
from astrometry_bot.storage import ImageStore
from astrometry_bot.telegram import TelegramClient


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def build_server(settings: Settings) -> BotServer:
    handler = MessageHandler(
        telegram=TelegramClient(settings.token, settings.telegram_api_url),
        store=ImageStore(settings.download_dir),
        client=AstrometryClient(
            settings.api_url, settings.astrometry_key, settings.polling_config()
        ),
        rate_limiter=RateLimiter(window=settings.rate_limit_seconds),
        results_url=settings.results_url,
        max_file_size=settings.max_file_size,
    )
    return BotServer(handler)


async def serve(settings: Settings) -> None:
    server = build_server(settings)
    await server.start(port=settings.port)
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main():
    settings = Settings()
    configure_logging(settings.log_level)

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
