"""Clipboard capture sources.

Every source answers ``poll()`` with the clipboard's current text and image
payload. A failed read is reported as "nothing there"; it never raises.
"""

import logging
import os
import subprocess
import sys
import threading

from cliptrail.config import MAX_IMAGE_SIZE, MAX_TEXT_SIZE, MIN_IMAGE_SIZE, POLL_INTERVAL, SUBPROCESS_TIMEOUT, WATCH_POLL_INTERVAL

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = ("image/png", "image/jpeg", "image/gif", "image/bmp")
WATCH_SIGNAL = "CLIPBOARD_CHANGED"


class BackendUnavailableError(Exception):
    pass


def is_wayland_session(environ=None) -> bool:
    env = os.environ if environ is None else environ
    return bool(env.get("WAYLAND_DISPLAY")) or env.get("XDG_SESSION_TYPE") == "wayland"


def accept_image(data: bytes | None) -> bytes | None:
    """Drop placeholder and oversized image payloads."""
    if not data or len(data) <= MIN_IMAGE_SIZE:
        return None
    if len(data) > MAX_IMAGE_SIZE:
        logger.warning("Image too large (%d bytes), skipping", len(data))
        return None
    return data


def accept_text(text: str | None) -> str | None:
    if not text:
        return None
    if len(text.encode("utf-8")) > MAX_TEXT_SIZE:
        logger.warning("Text too large (%d characters), skipping", len(text))
        return None
    return text


class ClipboardSource:
    """Base class: an immediate-read source polled on a fixed interval."""

    name = "clipboard"
    interval = POLL_INTERVAL

    def start(self) -> None:
        """Prepare the source; raises BackendUnavailableError if it cannot run."""

    def poll(self) -> tuple[str | None, bytes | None]:
        return accept_text(self.read_text()), accept_image(self.read_image())

    def read_text(self) -> str | None:
        raise NotImplementedError

    def read_image(self) -> bytes | None:
        raise NotImplementedError

    def fallback(self) -> "ClipboardSource | None":
        """A simpler source to use when ``start`` fails."""
        return None

    def close(self) -> None:
        pass

    @staticmethod
    def _run(args: list[str]) -> bytes | None:
        try:
            result = subprocess.run(args, capture_output=True, timeout=SUBPROCESS_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("%s failed: %s", args[0], e)
            return None
        if result.returncode != 0:
            return None
        return result.stdout


class XclipSource(ClipboardSource):
    """X11 clipboard read through xclip on every tick."""

    name = "xclip"

    def read_text(self) -> str | None:
        out = self._run(["xclip", "-selection", "clipboard", "-o"])
        if out is None:
            return None
        return out.decode("utf-8", errors="replace")

    def read_image(self) -> bytes | None:
        targets = self._run(["xclip", "-selection", "clipboard", "-t", "TARGETS", "-o"])
        if not targets:
            return None
        available = targets.decode("utf-8", errors="replace").split()
        for mime in IMAGE_MIME_TYPES:
            if mime in available:
                return self._run(["xclip", "-selection", "clipboard", "-t", mime, "-o"])
        return None


class WlPasteSource(ClipboardSource):
    """Wayland clipboard read through wl-paste on every tick."""

    name = "wl-paste"

    def read_text(self) -> str | None:
        out = self._run(["wl-paste", "--no-newline"])
        if out is None:
            return None
        return out.decode("utf-8", errors="replace")

    def read_image(self) -> bytes | None:
        types = self._run(["wl-paste", "--list-types"])
        if not types or b"image/" not in types:
            return None
        available = types.decode("utf-8", errors="replace").split()
        for mime in IMAGE_MIME_TYPES:
            if mime in available:
                data = self._run(["wl-paste", "--type", mime])
                if data and len(data) > MIN_IMAGE_SIZE:
                    return data
        return None


class WlPasteWatchSource(WlPasteSource):
    """Wayland source backed by a long-lived ``wl-paste --watch`` process.

    The watcher only says that something changed, so the payload is still
    read on a fast tick.
    """

    name = "wl-paste-watch"
    interval = WATCH_POLL_INTERVAL

    def __init__(self):
        self._process: subprocess.Popen | None = None
        self._reaper: threading.Thread | None = None

    def start(self) -> None:
        try:
            self._process = subprocess.Popen(
                ["wl-paste", "--watch", "echo", WATCH_SIGNAL],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BackendUnavailableError(f"wl-paste watcher failed to start: {e}") from e
        self._reaper = threading.Thread(target=self._reap, args=(self._process,), name="wl-paste-reaper", daemon=True)
        self._reaper.start()

    @staticmethod
    def _reap(process: subprocess.Popen) -> None:
        code = process.wait()
        if code not in (0, -15):
            logger.warning("wl-paste watcher exited with status %d", code)

    @property
    def watcher_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def fallback(self) -> ClipboardSource:
        return WlPasteSource()

    def close(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=SUBPROCESS_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


class PasteboardSource(ClipboardSource):
    """macOS general pasteboard, read only when its change count moves."""

    name = "pasteboard"

    def __init__(self):
        from AppKit import NSPasteboard

        self._pasteboard = NSPasteboard.generalPasteboard()
        self._last_change_count: int | None = None

    def poll(self) -> tuple[str | None, bytes | None]:
        current_count = self._pasteboard.changeCount()
        if current_count == self._last_change_count:
            return None, None
        self._last_change_count = current_count
        return super().poll()

    def read_text(self) -> str | None:
        from AppKit import NSPasteboardTypeString

        types = self._pasteboard.types()
        if types is None or NSPasteboardTypeString not in types:
            return None
        text = self._pasteboard.stringForType_(NSPasteboardTypeString)
        return str(text) if text else None

    def read_image(self) -> bytes | None:
        from AppKit import NSPasteboardTypePNG, NSPasteboardTypeTIFF

        types = self._pasteboard.types()
        if types is None:
            return None
        for img_type in (NSPasteboardTypePNG, NSPasteboardTypeTIFF):
            if img_type in types:
                data = self._pasteboard.dataForType_(img_type)
                if data is not None:
                    return bytes(data)
        return None


def select_source(platform: str | None = None, environ=None) -> ClipboardSource:
    """Pick the capture source for the running session."""
    platform = sys.platform if platform is None else platform
    if platform == "darwin":
        return PasteboardSource()
    if is_wayland_session(environ):
        return WlPasteWatchSource()
    return XclipSource()


def start_source(source: ClipboardSource) -> ClipboardSource:
    """Start a source, falling back to plain polling if it cannot run."""
    try:
        source.start()
        logger.info("Clipboard source: %s (every %.0f ms)", source.name, source.interval * 1000)
        return source
    except BackendUnavailableError as e:
        fallback = source.fallback()
        if fallback is None:
            raise
        logger.warning("%s, falling back to %s polling", e, fallback.name)
        return start_source(fallback)
