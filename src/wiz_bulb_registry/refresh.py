"""Background re-query of registered bulbs."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Dict, List, Optional

from .config import Config
from .health import BackoffPolicy, RefreshHealth
from .logging import get_logger
from .metrics import observe_refresh_cycle, record_refresh_result
from .models import Identifier
from .registry import RefreshOutcome, Registry


class RefreshService:
    """Periodically refresh liveness and power state of registered bulbs."""

    def __init__(
        self, config: Config, registry: Registry, health: Optional[RefreshHealth] = None
    ) -> None:
        self.config = config
        self.registry = registry
        self.logger = get_logger("wiz.refresh")
        self.health = health or RefreshHealth(
            failure_threshold=self.config.refresh_failure_threshold,
            cooldown_seconds=self.config.refresh_failure_cooldown,
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._backoff = BackoffPolicy(
            base=self.config.refresh_backoff_base,
            factor=self.config.refresh_backoff_factor,
            maximum=self.config.refresh_backoff_max,
        )
        self._batch_cursor = 0
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task or not self.config.refresh_enabled:
            if not self.config.refresh_enabled:
                self.logger.info("Bulb refresh disabled; skipping startup.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Bulb refresh started",
            extra={
                "interval_seconds": self.config.refresh_interval,
                "timeout_seconds": self.config.refresh_timeout,
                "batch_size": self.config.refresh_batch_size,
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self.logger.info("Bulb refresh stopped")
        self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            allowed, remaining = await self.health.allow_attempt()
            if not allowed:
                self.logger.warning(
                    "Refresh suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.exception("Refresh cycle failed")
                await self.health.record_failure(exc)
            if self.health.failed_cycles:
                await self._sleep_with_stop(self._backoff.delay(self.health.failed_cycles))
                continue
            await self._sleep_with_stop(self.config.refresh_interval)

    async def run_cycle(self) -> List[RefreshOutcome]:
        """Refresh one batch of bulbs and return the per-bulb outcomes."""

        started = time.perf_counter()
        self.cycles += 1
        ids = await self.registry.ids()
        batch = self._select_batch(ids)
        self.logger.debug("New refresh cycle", extra={"cycle": self.cycles, "batch": len(batch)})
        outcomes: List[RefreshOutcome] = []
        if batch:
            outcomes = await self.registry.refresh(batch, timeout=self.config.refresh_timeout)
        await self.health.record_cycle(outcomes, ids)
        summary: Dict[str, int] = {}
        for outcome in outcomes:
            record_refresh_result(outcome.status)
            summary[outcome.status] = summary.get(outcome.status, 0) + 1
        observe_refresh_cycle(time.perf_counter() - started)
        self.logger.info(
            "Refresh cycle complete",
            extra={"cycle": self.cycles, "results": summary},
        )
        return outcomes

    def _select_batch(self, ids: List[Identifier]) -> List[Identifier]:
        if not ids:
            return []
        batch_size = max(1, min(self.config.refresh_batch_size, len(ids)))
        start = self._batch_cursor % len(ids)
        end = start + batch_size
        if end <= len(ids):
            batch = ids[start:end]
        else:
            batch = ids[start:] + ids[: end - len(ids)]
        self._batch_cursor = end % len(ids)
        return batch

    async def _sleep_with_stop(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
