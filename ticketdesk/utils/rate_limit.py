from __future__ import annotations

from dataclasses import dataclass

from core.config import SecurityConfig
from core.errors import RateLimitedError
from services.cache import CacheBackend


@dataclass(slots=True, frozen=True)
class WindowRule:
    name: str
    limit: int
    window_seconds: int
    message: str

    @property
    def enabled(self) -> bool:
        return self.limit > 0 and self.window_seconds > 0


class TicketCreationThrottle:
    """Fixed-window limits on how often one member may open tickets in a server.

    Counters live in the cache backend, so every bot process sharing a Redis
    instance sees the same windows.
    """

    def __init__(self, cache: CacheBackend, config: SecurityConfig, namespace: str = "ticketdesk:create") -> None:
        self.cache = cache
        self.config = config
        self.namespace = namespace

    def rules(self) -> list[WindowRule]:
        cooldown = self.config.ticket_creation_cooldown_seconds
        return [
            WindowRule("cooldown", 1, cooldown, f"Ticket creation cooldown active ({cooldown}s)."),
            WindowRule(
                "hourly",
                self.config.ticket_creation_max_per_hour,
                3600,
                "Hourly ticket creation limit exceeded.",
            ),
        ]

    async def consume(self, guild_id: int, creator_id: int) -> None:
        for rule in self.rules():
            if not rule.enabled:
                continue
            key = f"{self.namespace}:{rule.name}:{guild_id}:{creator_id}"
            if await self.cache.incr(key, ttl=rule.window_seconds) > rule.limit:
                raise RateLimitedError(rule.message)
