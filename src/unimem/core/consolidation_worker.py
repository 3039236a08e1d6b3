"""
Consolidation Worker
====================
Background task that runs a consolidation pass every ``interval_seconds``.
"""

import asyncio
from datetime import datetime
from typing import Optional

from loguru import logger

from unimem.core._utils import log_task_exception
from unimem.core.config import ConsolidationConfig
from unimem.core.consolidation import ConsolidationEngine, ConsolidationResult
from unimem.core.memory_model import utc_now


class ConsolidationWorker:
    """Periodically drives a ConsolidationEngine."""

    def __init__(
        self,
        consolidation: ConsolidationEngine,
        config: Optional[ConsolidationConfig] = None,
        error_backoff_seconds: float = 60.0,
    ):
        self.consolidation = consolidation
        self.cfg = config or ConsolidationConfig()
        self.error_backoff_seconds = error_backoff_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[ConsolidationResult] = None

    @property
    def running(self) -> bool:
        return self._running

    # ---- Lifecycle ----------------------------------------------- #

    async def start(self) -> None:
        """Launch the background scheduler (no-op if disabled or already running)."""
        if not self.cfg.enabled:
            logger.info("ConsolidationWorker disabled by config.")
            return
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._schedule_loop(), name="consolidation_worker")
        self._task.add_done_callback(log_task_exception)
        logger.info(f"ConsolidationWorker started, interval {self.cfg.interval_seconds}s")

    async def stop(self) -> None:
        """Gracefully stop the worker. Safe to call more than once."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("ConsolidationWorker stopped.")

    # ---- Scheduler ----------------------------------------------- #

    async def _schedule_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.cfg.interval_seconds)
                if self._running:
                    await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception(f"ConsolidationWorker error: {exc}")
                await asyncio.sleep(self.error_backoff_seconds)

    async def run_once(self) -> ConsolidationResult:
        """Execute one consolidation pass. Safe to call manually."""
        result = await self.consolidation.consolidate()
        self.last_run = utc_now()
        self.last_result = result
        return result
