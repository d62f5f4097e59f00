"""Scheduled sweep that ages out earned points past their expiry window."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_ledger.services.points import ConfiguredSettingsSource, PointsService, SettingsSource

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_expiry_sweep(
    *,
    session_factory: SessionFactory,
    user_id: UUID | str | None = None,
    settings_source: SettingsSource | None = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Run the expiry sweep unless expiry is switched off in settings.

    ``force`` runs the sweep regardless of the ``enable_expiry`` flag, which the
    manual CLI uses for one-off catch-up runs.
    """

    source = settings_source or ConfiguredSettingsSource()
    if not force and not source.load().enable_expiry:
        logger.info("Points expiry disabled; skipping sweep")
        return {"skipped": True, "reason": "expiry_disabled"}

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        service = PointsService(managed_session, settings_source=source)
        summary: Dict[str, Any] = await service.run_expiry_sweep(user_id)

    summary["skipped"] = False
    return summary


__all__ = ["run_expiry_sweep"]
