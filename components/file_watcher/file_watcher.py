"""File watcher for live vault synchronization."""

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from components.document_processing import ChangeEvent, ChangeKind
from vault_agent.config import Config
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[List[ChangeEvent]], None]


class VaultEventHandler(FileSystemEventHandler):
    """Turns raw file system events into debounced vault change events."""

    def __init__(
        self,
        config: Config,
        on_changes: ChangeCallback,
        debounce_seconds: float = 2,
        poll_interval: float = 0.5,
    ):
        super().__init__()
        self.config = config
        self.on_changes = on_changes
        self.debounce_seconds = debounce_seconds
        self.poll_interval = poll_interval
        self.vault_path = config.get_vault_path()

        # Latest event per vault-relative path, with the time it was seen
        self._pending: Dict[str, Tuple[ChangeEvent, float]] = {}
        self._operation_lock = threading.Lock()

        self._stop_debounce = threading.Event()
        self._debounce_thread = threading.Thread(
            target=self._debounce_worker, daemon=True
        )
        self._debounce_thread.start()

    def _relative(self, path: Any) -> Optional[str]:
        """Vault-relative path of an eligible note, else None."""
        if isinstance(path, bytes):
            path = path.decode()
        try:
            relative = Path(path).resolve().relative_to(self.vault_path).as_posix()
        except ValueError:
            return None
        if any(part.startswith(".") for part in relative.split("/")):
            return None
        if not self.config.should_include_file(relative):
            return None
        return relative

    def on_created(self, event: Any) -> None:
        if not event.is_directory:
            self._schedule(ChangeKind.CREATED, event.src_path)

    def on_modified(self, event: Any) -> None:
        if not event.is_directory:
            self._schedule(ChangeKind.MODIFIED, event.src_path)

    def on_deleted(self, event: Any) -> None:
        if not event.is_directory:
            self._schedule(ChangeKind.DELETED, event.src_path)

    def on_moved(self, event: Any) -> None:
        """A rename inside the vault, or a move across its eligibility boundary."""
        if event.is_directory:
            return
        old_path = self._relative(event.src_path)
        new_path = self._relative(event.dest_path)
        if old_path and new_path:
            self._queue(ChangeEvent(kind=ChangeKind.RENAMED, path=new_path, old_path=old_path))
        elif old_path:
            self._queue(ChangeEvent(kind=ChangeKind.DELETED, path=old_path))
        elif new_path:
            self._queue(ChangeEvent(kind=ChangeKind.CREATED, path=new_path))

    def _schedule(self, kind: ChangeKind, src_path: Any) -> None:
        relative = self._relative(src_path)
        if relative is None:
            return
        self._queue(ChangeEvent(kind=kind, path=relative))

    def _queue(self, change: ChangeEvent) -> None:
        with self._operation_lock:
            self._pending[change.path] = (change, time.monotonic())

    def flush(self, force: bool = False) -> List[ChangeEvent]:
        """
        Delivers the events that have been quiet for the debounce window.

        Args:
            force: Deliver every pending event regardless of age.

        Returns:
            The events passed to the callback.
        """
        now = time.monotonic()
        ready: List[ChangeEvent] = []
        with self._operation_lock:
            for path, (change, seen) in list(self._pending.items()):
                if force or now - seen >= self.debounce_seconds:
                    ready.append(change)
                    del self._pending[path]

        if ready:
            logger.info(f"Delivering {len(ready)} debounced vault change(s)")
            try:
                self.on_changes(ready)
            except Exception as e:
                logger.error(f"Error handling vault changes: {e}", exc_info=True)
        return ready

    def _debounce_worker(self) -> None:
        while not self._stop_debounce.is_set():
            self.flush()
            self._stop_debounce.wait(self.poll_interval)

    def stop(self) -> None:
        """Stop the debounce worker thread."""
        self._stop_debounce.set()
        if self._debounce_thread.is_alive():
            self._debounce_thread.join(timeout=5)


class VaultWatcher:
    """Watches the vault directory and reports note changes."""

    def __init__(self, config: Config, on_changes: ChangeCallback):
        self.config = config
        self.on_changes = on_changes

        self.observer: Any = None
        self.event_handler: Optional[VaultEventHandler] = None

    def start(self) -> None:
        """Start watching the vault for changes."""
        if not self.config.watcher.enabled:
            logger.info("File watching is disabled in configuration")
            return

        vault_path = self.config.get_vault_path()
        if not vault_path.exists():
            logger.warning(f"Vault directory does not exist: {vault_path}")
            return

        logger.info(f"Starting file watcher for vault: {vault_path}")

        self.event_handler = VaultEventHandler(
            self.config,
            self.on_changes,
            debounce_seconds=self.config.watcher.debounce_seconds,
        )

        self.observer = Observer()
        self.observer.schedule(self.event_handler, str(vault_path), recursive=True)
        self.observer.start()

        logger.info("File watcher started successfully")

    def stop(self) -> None:
        """Stop watching the vault."""
        if self.observer:
            logger.info("Stopping file watcher")
            self.observer.stop()
            self.observer.join()
            self.observer = None

        if self.event_handler:
            self.event_handler.stop()
            self.event_handler = None

        logger.info("File watcher stopped")

    def is_running(self) -> bool:
        """Check if the watcher is currently running."""
        return self.observer is not None and self.observer.is_alive()
