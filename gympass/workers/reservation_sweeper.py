from __future__ import annotations

import asyncio
import logging

from gympass.core.config import get_settings
from gympass.core.logging import configure_logging
from gympass.persistence.db import (
    dispose_registry_engine,
    get_registry_engine,
    get_registry_sessionmaker,
    init_registry_schema,
)
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.services.checkout import build_checkout_provider
from gympass.services.registration import RegistrationReservationManager


logger = logging.getLogger(__name__)


async def sweep_once(manager: RegistrationReservationManager) -> list[str]:
    # Expiry is already enforced at read time; sweeping only keeps the table tidy.
    expired = await manager.sweep_expired()
    if expired:
        logger.info("reservation_sweep expired=%s", len(expired))
    return expired


async def sweeper_loop(manager: RegistrationReservationManager, interval_s: float) -> None:
    interval_s = max(1.0, float(interval_s))
    while True:
        try:
            await sweep_once(manager)
        except Exception:  # noqa: BLE001 - keep the sweeper alive while surfacing failures in logs.
            logger.exception("reservation sweeper failed")
        await asyncio.sleep(interval_s)


async def main() -> None:
    configure_logging()
    settings = get_settings()
    await init_registry_schema(get_registry_engine())
    sessionmaker = get_registry_sessionmaker()
    manager = RegistrationReservationManager(
        sessionmaker,
        TenantRegistry(sessionmaker),
        build_checkout_provider(settings),
        settings=settings,
    )
    try:
        await sweeper_loop(manager, settings.reservation_sweep_interval_s)
    finally:
        await dispose_registry_engine()


if __name__ == "__main__":
    asyncio.run(main())
