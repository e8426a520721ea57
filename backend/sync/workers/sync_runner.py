"""
Sync Runner

Fire-and-forget boundary for sync runs. A trigger creates the sync run row,
schedules the run on its own asyncio task with its own database session and
returns the run id straight away; callers poll the run status.

Usage:
- API trigger: POST /api/sync/trigger
- Standalone: python -m sync.workers.sync_runner <connection_id>

Features:
- One run in flight per connection (in-process); a second trigger is rejected
- Each run owns its session and provider, closed when the run ends
- Failures are logged and reported, never raised into the caller
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Set

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.sync_models import SyncRunDB, SyncStatus, utc_now
from logging_config import sync_context
from sentry_integration import capture_exception
from sync.errors import SyncAlreadyRunningError
from sync.providers.factory import BankingProviderFactory, provider_factory
from sync.services.sync_orchestrator import SyncOptions, SyncOrchestrator, SyncResult, create_sync_run

logger = logging.getLogger(__name__)


@dataclass
class TriggeredRun:
    sync_run_id: str
    connection_id: str
    started_at: datetime


class SyncRunner:
    """
    Schedules sync runs in the background.

    This runner:
    1. Rejects a trigger while the connection already has a run in flight
    2. Creates the provider (unsupported or unknown connections fail here,
       before any run row exists)
    3. Creates the IN_PROGRESS run row and returns it
    4. Executes the run on a separate task
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker,
        factory: Optional[BankingProviderFactory] = None,
        orchestrator_class=SyncOrchestrator
    ):
        self.db_session_factory = db_session_factory
        self.factory = factory or provider_factory
        self.orchestrator_class = orchestrator_class
        self._tasks: Set[asyncio.Task] = set()
        self._runs: Dict[str, asyncio.Task] = {}
        self._active: Dict[str, str] = {}  # connection_id -> sync_run_id

    def is_running(self, connection_id: str) -> bool:
        return connection_id in self._active

    @property
    def active_runs(self) -> Dict[str, str]:
        """connection_id -> sync_run_id for runs in flight."""
        return {k: v for k, v in self._active.items() if v}

    async def trigger(self, connection_id: str, options: Optional[SyncOptions] = None) -> TriggeredRun:
        """
        Start a sync run for a connection without waiting for it.

        Raises:
            SyncAlreadyRunningError: a run for the connection is in flight
            ConnectionNotFoundError / UnsupportedProviderError: from the factory
        """
        if connection_id in self._active:
            raise SyncAlreadyRunningError(connection_id, self._active[connection_id])

        options = options or SyncOptions()
        # Reserve the connection before the first await
        self._active[connection_id] = ""

        try:
            async with self.db_session_factory() as db:
                # Unknown and unsupported connections fail before a run row exists
                provider = await self.factory.create_provider(db, connection_id)
                await provider.aclose()
                sync_run_id = await create_sync_run(db, connection_id, options)
        except Exception:
            self._active.pop(connection_id, None)
            raise

        self._active[connection_id] = sync_run_id
        task = asyncio.create_task(
            self._run(sync_run_id, connection_id, options),
            name=f"sync-run-{sync_run_id}"
        )
        self._tasks.add(task)
        self._runs[sync_run_id] = task
        task.add_done_callback(lambda t: self._on_done(t, sync_run_id, connection_id))

        logger.info(f"[SyncRunner] Triggered sync run {sync_run_id} for connection {connection_id}")
        return TriggeredRun(sync_run_id=sync_run_id, connection_id=connection_id, started_at=utc_now())

    async def wait_for(self, sync_run_id: str) -> Optional[SyncResult]:
        """Await a run scheduled by this runner. None if unknown or failed."""
        task = self._runs.get(sync_run_id)
        if task is None:
            return None
        return await task

    async def shutdown(self):
        """Wait for in-flight runs to finish."""
        if self._tasks:
            logger.info(f"[SyncRunner] Waiting for {len(self._tasks)} sync runs to finish...")
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _run(self, sync_run_id: str, connection_id: str, options: SyncOptions) -> Optional[SyncResult]:
        with sync_context(connection_id, sync_run_id):
            return await self._execute(sync_run_id, connection_id, options)

    async def _execute(self, sync_run_id: str, connection_id: str, options: SyncOptions) -> Optional[SyncResult]:
        async with self.db_session_factory() as db:
            try:
                provider = await self.factory.create_provider(db, connection_id)
            except Exception as e:
                logger.error(f"[SyncRunner] Could not create provider for sync run {sync_run_id}: {e}")
                capture_exception(e, connection_id=connection_id, sync_run_id=sync_run_id)
                await self._mark_failed(db, sync_run_id, e)
                return None

            try:
                orchestrator = self.orchestrator_class(db, provider)
                result = await orchestrator.execute_run(sync_run_id, connection_id, options)
                logger.info(
                    f"[SyncRunner] Sync run {sync_run_id} completed: "
                    f"{result.transactions_imported} imported, {result.needs_review} for review, "
                    f"{len(result.errors)} errors"
                )
                return result
            except Exception as e:
                # Already recorded on the run row and reported by the orchestrator
                logger.error(f"[SyncRunner] Sync run {sync_run_id} failed: {e}")
                return None
            finally:
                await provider.aclose()

    @staticmethod
    async def _mark_failed(db, sync_run_id: str, error: Exception):
        await db.rollback()
        await db.execute(
            update(SyncRunDB)
            .where(SyncRunDB.id == sync_run_id, SyncRunDB.status == SyncStatus.IN_PROGRESS)
            .values(
                status=SyncStatus.FAILED,
                completed_at=utc_now(),
                error_message=str(error),
                error_details={"type": type(error).__name__, "message": str(error), "errors": []}
            )
        )
        await db.commit()

    def _on_done(self, task: asyncio.Task, sync_run_id: str, connection_id: str):
        self._tasks.discard(task)
        self._runs.pop(sync_run_id, None)
        if self._active.get(connection_id) == sync_run_id:
            del self._active[connection_id]

        if task.cancelled():
            logger.warning(f"[SyncRunner] Sync run {sync_run_id} was cancelled")
            return

        error = task.exception()
        if error is not None:
            logger.error(f"[SyncRunner] Sync run {sync_run_id} crashed: {error}")
            capture_exception(error, connection_id=connection_id, sync_run_id=sync_run_id)


async def run_once(connection_id: str):
    """Run one sync for a connection in the foreground."""
    from database.connection import AsyncSessionLocal, engine

    async with AsyncSessionLocal() as db:
        provider = await provider_factory.create_provider(db, connection_id)
        try:
            result = await SyncOrchestrator(db, provider).sync_connection(connection_id)
        finally:
            await provider.aclose()

    await engine.dispose()
    return result


if __name__ == "__main__":
    from logging_config import setup_logging

    setup_logging(json_format=False)
    if len(sys.argv) != 2:
        print("Usage: python -m sync.workers.sync_runner <connection_id>")
        sys.exit(1)

    summary = asyncio.run(run_once(sys.argv[1]))
    print(summary.to_dict())
