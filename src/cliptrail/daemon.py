import logging
import threading
from collections.abc import Callable

from cliptrail import config
from cliptrail.backends import ClipboardSource
from cliptrail.models import Threat
from cliptrail.monitor import ClipboardMonitor
from cliptrail.security import highest_threat, is_high_risk, summarize_threats
from cliptrail.storage import StorageError, StorageManager
from cliptrail.threat_memory import ThreatMemory

logger = logging.getLogger(__name__)


class MaintenanceTask:
    """Run an action on a fixed interval until stopped."""

    def __init__(self, name: str, interval: float, action: Callable[[], None], stop: threading.Event):
        self.name = name
        self.interval = interval
        self._action = action
        self._stop = stop
        self._thread = threading.Thread(target=self._loop, name=f"maintenance-{name}", daemon=True)

    def start(self) -> None:
        logger.info("Starting automatic %s task (every %.0f s)", self.name, self.interval)
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._action()
            except Exception:
                logger.exception("Automatic %s failed", self.name)
        logger.info("Stopping %s maintenance task", self.name)


class ClipboardDaemon:
    """Wires the capture pipeline to the store and runs periodic maintenance."""

    def __init__(
        self,
        storage: StorageManager,
        source: ClipboardSource,
        threat_memory: ThreatMemory | None = None,
        auto_dedupe: bool = config.AUTO_DEDUPE,
        dedupe_interval: float = config.DEDUPE_INTERVAL * 60,
        auto_prune: bool = config.AUTO_PRUNE,
        prune_interval: float = config.PRUNE_INTERVAL * 60,
        prune_empty: bool = config.PRUNE_EMPTY,
        prune_single_char: bool = config.PRUNE_SINGLE_CHAR,
    ):
        self._storage = storage
        self._stop = threading.Event()
        self._prune_empty = prune_empty
        self._prune_single_char = prune_single_char
        self.monitor = ClipboardMonitor(
            source,
            threat_memory,
            on_text=self.on_text,
            on_image=self.on_image,
            on_security_threat=self.on_security_threat,
        )

        self.tasks: list[MaintenanceTask] = []
        if auto_dedupe:
            self.tasks.append(MaintenanceTask("deduplication", dedupe_interval, self.run_dedupe, self._stop))
        if auto_prune:
            self.tasks.append(MaintenanceTask("pruning", prune_interval, self.run_prune, self._stop))

    def on_text(self, content: str) -> None:
        try:
            self._storage.add_text(content)
        except StorageError:
            logger.exception("Failed to store clipboard content")

    def on_image(self, image_data: bytes, description: str) -> None:
        try:
            self._storage.add_image(image_data, description)
        except StorageError:
            logger.exception("Failed to store clipboard image")

    def on_security_threat(self, content: str, threats: list[Threat]) -> None:
        threat = highest_threat(threats)
        if threat is None:
            return
        risk = "High-risk" if is_high_risk(threats) else "Medium-risk"
        logger.log(
            logging.WARNING if is_high_risk(threats) else logging.INFO,
            "SECURITY: %s %s content detected (%.0f%% confidence): %s",
            risk, summarize_threats(threats), threat.confidence * 100, threat.reason,
        )

    def run_dedupe(self) -> None:
        removed = self._storage.deduplicate_existing()
        if removed:
            logger.info("Automatic deduplication removed %d duplicates", removed)

    def run_prune(self) -> None:
        removed = self._storage.prune_database(self._prune_empty, self._prune_single_char)
        if removed:
            logger.info("Automatic pruning removed %d entries", removed)

    def run(self) -> None:
        """Capture until ``stop``; blocks the calling thread."""
        for task in self.tasks:
            task.start()
        try:
            self.monitor.run()
        finally:
            self._stop.set()
            for task in self.tasks:
                task.join(timeout=1.0)

    def stop(self) -> None:
        self._stop.set()
        self.monitor.stop()
