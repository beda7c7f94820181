from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import uvicorn

from core.api import create_api_app
from core.bot import TicketBot
from core.config import AppConfig, load_config
from core.logging import configure_logging

LOGGER = logging.getLogger(__name__)


async def _run(config: AppConfig) -> None:
    bot = TicketBot(config=config)
    async with bot:
        server: uvicorn.Server | None = None
        api_task: asyncio.Task[None] | None = None
        if config.fastapi.enabled:
            server = uvicorn.Server(
                uvicorn.Config(
                    app=create_api_app(bot),
                    host=config.fastapi.host,
                    port=config.fastapi.port,
                    log_level=config.logging.level.lower(),
                )
            )
            api_task = asyncio.create_task(server.serve())
            LOGGER.info("Console API listening on %s:%s", config.fastapi.host, config.fastapi.port)
        try:
            await bot.start(config.discord.token)
        finally:
            if server is not None and api_task is not None:
                server.should_exit = True
                await api_task


def main() -> None:
    root = Path(__file__).resolve().parent
    config_path = Path(os.getenv("TICKETDESK_CONFIG", root / "config" / "config.yaml"))
    config = load_config(config_path)
    configure_logging(config.logging)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
