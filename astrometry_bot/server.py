import asyncio
from typing import Set

from aiohttp import web
from loguru import logger

from astrometry_bot.handler import MessageHandler
from astrometry_bot.telegram import Message, Update


class BotServer:
    """Receives Telegram webhook updates and runs each image in its own task."""

    def __init__(self, handler: MessageHandler, shutdown_grace: float = 10.0):
        self.handler = handler
        self.shutdown_grace = shutdown_grace
        self.tasks: Set[asyncio.Task] = set()
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post("/webhook", self.handle_webhook)
        self.app.router.add_get("/healthz", self.handle_health)
        self.logger = logger

    async def handle_webhook(self, request):
        try:
            update = Update.model_validate(await request.json())
        except ValueError as e:
            # Telegram redelivers anything that is not acknowledged
            self.logger.error(f"Ignoring malformed update: {e}")
            return web.Response(text="OK")

        if update.message is not None:
            self.dispatch(update.message)
        return web.Response(text="OK")

    async def handle_health(self, request):
        return web.Response(text="OK")

    def dispatch(self, message: Message) -> asyncio.Task:
        task = asyncio.create_task(self.handler.handle(message))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def start(self, port: int = 8080, host: str = "0.0.0.0"):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, host, port)
        await site.start()
        self.logger.info(f"Telegram bot is running on port {port}")
        return site

    async def stop(self):
        if self.tasks:
            self.logger.info(f"Waiting for {len(self.tasks)} in-flight images")
            _, pending = await asyncio.wait(self.tasks, timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if self.runner is not None:
            await self.runner.cleanup()
