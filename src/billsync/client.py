# ABOUTME: Sync engine management with caching
# ABOUTME: Provides a lock-guarded engine factory for tools

import asyncio
import logging

from billsync.config import Settings
from billsync.engine import SyncEngine
from billsync.storage import JsonFileStore

logger = logging.getLogger(__name__)

# Module-level engine cache with lock for safe concurrent first use
_engine: SyncEngine | None = None
_engine_lock = asyncio.Lock()


async def get_engine() -> SyncEngine:
    """
    Get or create the process-wide sync engine.

    Creates the engine on first call from environment settings backed by
    the JSON file store; returns the cached engine afterwards.

    Returns:
        SyncEngine instance
    """
    global _engine

    async with _engine_lock:
        if _engine is None:
            settings = Settings.from_env()
            logger.info(f"Creating sync engine (data dir: {settings.data_dir})")
            _engine = SyncEngine.from_settings(settings, JsonFileStore(settings.data_dir))
        return _engine


async def close_engine() -> None:
    """Close and drop the cached engine."""
    global _engine

    async with _engine_lock:
        if _engine:
            await _engine.close()
            _engine = None
            logger.info("Closed sync engine")
