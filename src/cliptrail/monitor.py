import logging
import queue
import threading
from collections.abc import Callable, Iterator

from cliptrail.backends import ClipboardSource, start_source
from cliptrail.config import STABILIZE_TIMEOUT
from cliptrail.models import CaptureEvent, CaptureKind, Threat
from cliptrail.security import classify, highest_threat, is_high_risk
from cliptrail.stabilizer import SelectionStabilizer, TimerFactory
from cliptrail.threat_memory import ThreatMemory, ThreatMemoryError
from cliptrail.utils import compute_hash, describe_image, text_hash, truncate_text

logger = logging.getLogger(__name__)

_CLOSED = object()


class ClipboardMonitor:
    """Capture-classify pipeline between a clipboard source and its consumers.

    Consumers either pass callbacks or iterate ``events()``; both see the
    same events in the same order.
    """

    def __init__(
        self,
        source: ClipboardSource,
        threat_memory: ThreatMemory | None = None,
        on_text: Callable[[str], None] | None = None,
        on_image: Callable[[bytes, str], None] | None = None,
        on_security_threat: Callable[[str, list[Threat]], None] | None = None,
        classifier: Callable[[str], list[Threat]] = classify,
        stabilize_timeout: float = STABILIZE_TIMEOUT,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self._source = source
        self._threat_memory = threat_memory
        self._on_text = on_text
        self._on_image = on_image
        self._on_security_threat = on_security_threat
        self._classifier = classifier
        self._stabilizer = SelectionStabilizer(self._process_text, stabilize_timeout, timer_factory)
        self._last_image_hash: str | None = None
        self._events: queue.Queue | None = None
        self._stop = threading.Event()

    @property
    def source(self) -> ClipboardSource:
        return self._source

    def check_clipboard(self) -> bool:
        """Run one poll tick. Returns True if the clipboard held anything new."""
        try:
            text, image = self._source.poll()
        except Exception:
            logger.exception("Error reading clipboard")
            return False

        changed = False
        if text:
            changed = self._stabilizer.submit(text)

        if image:
            image_hash = compute_hash(image)
            if image_hash != self._last_image_hash:
                self._last_image_hash = image_hash
                description = describe_image(image)
                logger.debug("Captured image data: %d bytes", len(image))
                self._publish(CaptureEvent(CaptureKind.IMAGE, description, image_data=image))
                changed = True
        return changed

    def run(self) -> None:
        """Poll until ``stop`` is called, then release the source."""
        self._source = start_source(self._source)
        try:
            while not self._stop.is_set():
                self.check_clipboard()
                self._stop.wait(self._source.interval)
        finally:
            self.close()

    def stop(self) -> None:
        self._stop.set()

    def events(self) -> Iterator[CaptureEvent]:
        """Stream of capture events; it ends when the monitor is closed.

        Can be called once per monitor. Events are buffered from this call
        on, even before the iterator is first advanced.
        """
        if self._events is not None:
            raise RuntimeError("events() can only be consumed once")
        self._events = queue.Queue()
        return self._drain(self._events)

    @staticmethod
    def _drain(events: queue.Queue) -> Iterator[CaptureEvent]:
        while True:
            event = events.get()
            if event is _CLOSED:
                return
            yield event

    def close(self) -> None:
        self._stop.set()
        self._stabilizer.cancel()
        self._source.close()
        if self._events is not None:
            self._events.put(_CLOSED)

    def _process_text(self, content: str) -> None:
        threats = self._classifier(content)
        if threats:
            if self._is_dismissed(content):
                logger.info("Skipping user-dismissed security content (hash: %s)", text_hash(content)[:8])
                return

            top = highest_threat(threats)
            if is_high_risk(threats):
                logger.warning(
                    "High-risk security content detected (%.0f%% confidence): %s - storing with security indicator",
                    top.confidence * 100, top.type,
                )
            else:
                logger.info(
                    "Security content detected (%.0f%% confidence): %s - storing with security indicator",
                    top.confidence * 100, top.type,
                )
            self._publish(CaptureEvent(CaptureKind.THREAT, content, threats=tuple(threats)))

        logger.debug("Storing clipboard content (len=%d): %s", len(content), truncate_text(content))
        self._publish(CaptureEvent(CaptureKind.TEXT, content))

    def _is_dismissed(self, content: str) -> bool:
        if self._threat_memory is None:
            return False
        try:
            return self._threat_memory.has(text_hash(content))
        except ThreatMemoryError:
            logger.warning("Threat memory lookup failed, not suppressing", exc_info=True)
            return False

    def _publish(self, event: CaptureEvent) -> None:
        try:
            if event.kind == CaptureKind.TEXT and self._on_text:
                self._on_text(event.content)
            elif event.kind == CaptureKind.IMAGE and self._on_image:
                self._on_image(event.image_data, event.content)
            elif event.kind == CaptureKind.THREAT and self._on_security_threat:
                self._on_security_threat(event.content, list(event.threats))
        except Exception:
            logger.exception("Error in %s capture callback", event.kind.value)
        if self._events is not None:
            self._events.put(event)
