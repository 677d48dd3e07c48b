"""Local persistence: mailbox cache and pending-change queue."""

from pathlib import Path
from typing import Optional, Tuple

from .change_queue import ChangeQueue
from .config import DatabaseConfig, get_config, reset_config
from .engine_manager import EngineManager
from .local_store import BackfillPosition, LocalStore


def open_database(
    db_path: Path, config: Optional[DatabaseConfig] = None
) -> Tuple[EngineManager, LocalStore, ChangeQueue]:
    """Local store and change queue sharing one engine over ``db_path``."""
    engine_manager = EngineManager(db_path, config=config)
    return engine_manager, LocalStore(engine_manager), ChangeQueue(engine_manager)


__all__ = [
    "BackfillPosition",
    "ChangeQueue",
    "DatabaseConfig",
    "EngineManager",
    "LocalStore",
    "get_config",
    "open_database",
    "reset_config",
]
