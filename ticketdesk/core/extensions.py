from __future__ import annotations

import logging
from collections.abc import Iterable

from discord.ext import commands

LOGGER = logging.getLogger(__name__)

# Persistent ticket controls are registered by this cog; without it old buttons stop responding.
REQUIRED_EXTENSIONS = frozenset({"cogs.tickets"})


async def load_extensions(bot: commands.Bot, extension_names: Iterable[str]) -> list[str]:
    """Load each cog module, returning the names that are active afterwards."""
    loaded: list[str] = []
    for ext in extension_names:
        try:
            await bot.load_extension(ext)
        except commands.ExtensionAlreadyLoaded:
            LOGGER.warning("Extension already loaded: %s", ext)
        except commands.ExtensionError:
            if ext in REQUIRED_EXTENSIONS:
                raise
            LOGGER.exception("Failed to load extension: %s", ext)
            continue
        else:
            LOGGER.info("Loaded extension: %s", ext)
        loaded.append(ext)

    missing = REQUIRED_EXTENSIONS.difference(loaded)
    if missing:
        LOGGER.warning("Required extensions not enabled: %s", ", ".join(sorted(missing)))
    return loaded
