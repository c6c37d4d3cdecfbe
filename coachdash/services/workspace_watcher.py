"""Documentation watcher using watchfiles.

Watches the workspace docs directory and republishes the documentation
status topic whenever a markdown file is added, modified or deleted.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from watchfiles import Change, awatch

from coachdash import config
from coachdash.date_utils import iso_now
from coachdash.events import DOCUMENTATION_STATUS, EventBus
from coachdash.services.workspace import WorkspaceInspector

logger = logging.getLogger("coachdash.watcher")


class WorkspaceWatcher:
    """Background task that keeps ``documentation.status`` current."""

    def __init__(self, inspector: WorkspaceInspector, bus: EventBus, stale_days: int = config.DOC_STALE_DAYS):
        self.inspector = inspector
        self.channel = bus.channel(DOCUMENTATION_STATUS)
        self.stale_days = stale_days
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    @property
    def docs_path(self) -> Path:
        return self.inspector.root / self.inspector.docs_dir

    def snapshot(self) -> dict[str, Any]:
        docs = self.inspector.scan_docs(self.stale_days)
        return {
            "status": {
                "docs_dir": self.inspector.docs_dir,
                "doc_count": len(docs),
                "stale": [d.path for d in docs if d.stale],
                "total_words": sum(d.word_count for d in docs),
                "scanned_at": iso_now(),
            }
        }

    def publish(self) -> dict[str, Any]:
        status = self.snapshot()
        self.channel.publish(status)
        return status

    async def start(self) -> None:
        if self._running:
            logger.warning("Workspace watcher already running")
            return
        self.publish()
        if not self.docs_path.is_dir():
            logger.warning(f"Docs directory {self.docs_path} does not exist, watcher has nothing to monitor")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"Workspace watcher started on {self.docs_path}")

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Workspace watcher stopped")

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(self.docs_path, stop_event=self._stop_event):
                if not self._running:
                    break
                relevant = self._classify_changes(changes)
                if not relevant:
                    continue
                logger.info(f"Detected {len(relevant)} doc changes, republishing status")
                try:
                    self.publish()
                except OSError as e:
                    logger.error(f"Failed to rescan docs: {e}")
        except asyncio.CancelledError:
            logger.info("Workspace watcher task cancelled")
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[tuple[str, Path]]:
        result = []
        for change_type, path_str in changes:
            path = Path(path_str)
            if path.suffix != ".md":
                continue
            if change_type == Change.deleted:
                result.append(("deleted", path))
            elif change_type in (Change.modified, Change.added):
                result.append(("modified", path))
        return result
