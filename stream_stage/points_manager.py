"""Points manager — balance semantics and the watch-time accrual loop.

Every balance change goes through LedgerDatabase. The accrual loop polls
the live chatters roster on a fixed interval and awards a flat amount to
each viewer present; it does not depend on the notification stream.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

from .database import InvalidAmountError, LedgerDatabase

if TYPE_CHECKING:
    from .config import PointsConfig
    from .models import Identity


ACCRUAL_REASON = "accrual:watching"


class RosterSource(Protocol):
    async def query_roster(self) -> list[Identity]: ...


class PointsManager:
    """Owns award/spend/affordability and runs the accrual scheduler."""

    def __init__(
        self,
        config: PointsConfig,
        database: LedgerDatabase | None,
        roster: RosterSource | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._roster = roster
        self._logger = logger or logging.getLogger("stage.points")

        self._accrual_task: asyncio.Task | None = None
        # Held for the whole of a tick; stop() takes it so a tick is never cut short.
        self._tick_lock = asyncio.Lock()

        # Metrics counters
        self.ticks_completed: int = 0
        self.points_awarded_total: int = 0

    @property
    def enabled(self) -> bool:
        """False when disabled by config or when the ledger is unavailable."""
        return self._config.enabled and self._db is not None

    @property
    def is_running(self) -> bool:
        return self._accrual_task is not None and not self._accrual_task.done()

    @property
    def config(self) -> PointsConfig:
        return self._config

    # ══════════════════════════════════════════════════════════
    #  Scheduler lifecycle
    # ══════════════════════════════════════════════════════════

    def start(self) -> None:
        """Arm the accrual loop. No-op when disabled or already running."""
        if not self.enabled:
            self._logger.info("Points system is disabled, not starting")
            return
        if self.is_running:
            self._logger.warning("Points accrual already running")
            return

        self._accrual_task = asyncio.create_task(self._accrual_loop())
        self._logger.info(
            "Points accrual started: %d points every %.0fs (activity timeout %.1f min)",
            self._config.points_per_tick,
            self._config.accrual_interval_seconds,
            self._config.activity_timeout_minutes,
        )

    async def stop(self) -> None:
        """Disarm the accrual loop, letting an in-flight tick finish. Idempotent."""
        task = self._accrual_task
        if task is None:
            return
        self._accrual_task = None
        async with self._tick_lock:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.info("Points accrual stopped")

    async def update_config(self, new_config: PointsConfig) -> None:
        """Hot-swap points settings.

        A changed interval restarts the loop so the next tick uses it.
        """
        old = self._config
        self._config = new_config
        self._logger.info(
            "Points config updated: %d per tick, interval %.0fs, activity timeout %.1f min, enabled=%s",
            new_config.points_per_tick,
            new_config.accrual_interval_seconds,
            new_config.activity_timeout_minutes,
            new_config.enabled,
        )

        if not self.enabled:
            await self.stop()
        elif not self.is_running:
            self.start()
        elif new_config.accrual_interval_seconds != old.accrual_interval_seconds:
            await self.stop()
            self.start()

    async def _accrual_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.accrual_interval_seconds)
            async with self._tick_lock:
                try:
                    await self.run_accrual_tick()
                except Exception:
                    self._logger.exception("Points accrual tick failed")

    # ══════════════════════════════════════════════════════════
    #  Accrual
    # ══════════════════════════════════════════════════════════

    async def run_accrual_tick(self) -> int:
        """Award the per-tick amount to every viewer on the roster.

        Returns the number of viewers credited. A failure for one viewer is
        logged and the loop moves on to the next.
        """
        if self._roster is None:
            self._logger.debug("No roster source; skipping accrual tick")
            return 0

        viewers = await self._roster.query_roster()
        if not viewers:
            self._logger.debug("No viewers to award points to")
            self.ticks_completed += 1
            return 0

        self._logger.info("Awarding points to %d viewer(s)", len(viewers))
        awarded = 0
        for viewer in viewers:
            try:
                await self._award_to_viewer(viewer)
                awarded += 1
            except Exception as exc:
                self._logger.error(
                    "Failed to award points to %s (%s): %s",
                    viewer.name, viewer.user_id, exc,
                )
        self.ticks_completed += 1
        return awarded

    async def _award_to_viewer(self, viewer: Identity) -> None:
        amount = self._config.points_per_tick
        created = await self._db.create_account(viewer.user_id, viewer.name)
        if created:
            self._logger.info("New account created for points accrual: %s", viewer.name)
        await self._db.award(viewer.user_id, amount, ACCRUAL_REASON)
        self.points_awarded_total += amount

    # ══════════════════════════════════════════════════════════
    #  Balance operations
    # ══════════════════════════════════════════════════════════

    async def award_points(self, user_id: str, amount: int, reason: str) -> int:
        """Credit an existing account. Returns the new balance."""
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive for awarding points")
        balance = await self._require_db().award(user_id, amount, reason)
        self._logger.info("Points awarded: %s +%d (%s)", user_id, amount, reason)
        return balance

    async def spend_points(self, user_id: str, amount: int, reason: str) -> int:
        """Debit an existing account if it can cover *amount*. Returns the new balance."""
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive for spending points")
        balance = await self._require_db().spend(user_id, amount, reason)
        self._logger.info("Points spent: %s -%d (%s)", user_id, amount, reason)
        return balance

    async def can_afford(self, user_id: str, cost: int) -> bool:
        """Point-in-time balance check; always True when points are disabled."""
        if not self.enabled:
            return True
        return await self.get_points(user_id) >= cost

    async def get_points(self, user_id: str) -> int:
        if self._db is None:
            return 0
        return await self._db.get_balance(user_id)

    async def record_activity(self, viewer: Identity) -> None:
        """Chat activity signal: refresh last_seen for a known account."""
        if not self.enabled:
            return
        await self._db.touch_account(viewer.user_id, viewer.name)

    async def get_stats(self) -> dict:
        stats: dict = {
            "config": {
                "points_per_tick": self._config.points_per_tick,
                "activity_timeout_minutes": self._config.activity_timeout_minutes,
                "accrual_interval_seconds": self._config.accrual_interval_seconds,
            },
            "enabled": self.enabled,
            "is_running": self.is_running,
            "ticks_completed": self.ticks_completed,
            "points_awarded_total": self.points_awarded_total,
        }
        if self._db is not None:
            ledger = await self._db.get_stats()
            stats["tracked_accounts"] = ledger["users"]
            stats["total_points"] = ledger["total_points"]
            stats["active_viewers"] = await self._db.count_seen_since(
                self._config.activity_timeout_minutes,
            )
        return stats

    def _require_db(self) -> LedgerDatabase:
        if self._db is None:
            raise RuntimeError("Ledger database is not available")
        return self._db
