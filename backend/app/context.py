"""Per-application service container.

Everything stateful (connection pool, rate-limit counters, email transport)
is built here and attached to ``app.state.ctx`` by the lifespan, so two apps
created in the same process never share counters or connections.
"""

import logging

from app.config import Settings
from app.database import ConnectionPoolManager
from app.services.api_keys import ApiKeyValidator
from app.services.email_service import EmailService
from app.services.rate_limit import EmailRateLimiters

logger = logging.getLogger(__name__)


class EmailApiContext:
    def __init__(
        self,
        settings: Settings,
        *,
        pool: ConnectionPoolManager | None = None,
        limiters: EmailRateLimiters | None = None,
        email: EmailService | None = None,
    ) -> None:
        self.settings = settings
        self.pool = pool or ConnectionPoolManager.from_settings(settings)
        self.limiters = limiters or EmailRateLimiters.from_settings(settings)
        self.validator = ApiKeyValidator(self.pool)
        self.email = email or EmailService.from_settings(self.pool, settings)

    async def init(self, *, create_tables: bool = True) -> None:
        await self.pool.initialize()
        if create_tables:
            await self.pool.create_all()
        self.pool.start_monitor()
        logger.info("Email API context ready", extra={"limiters": self.limiters.describe()})

    async def shutdown(self) -> None:
        await self.validator.drain()
        await self.pool.shutdown()
