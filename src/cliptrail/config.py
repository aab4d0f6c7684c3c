import os
from pathlib import Path

DATA_DIR = Path(os.environ.get("CLIPTRAIL_DATA_DIR", Path.home() / ".local" / "share" / "cliptrail"))
DB_PATH = DATA_DIR / "history.db"
THREATS_DB_PATH = DATA_DIR / "security_hashes.db"
LOG_PATH = DATA_DIR / "cliptrail.log"
LOG_MAX_BYTES = 10_000_000
LOG_BACKUPS = 3

POLL_INTERVAL = 0.5  # seconds between clipboard reads
WATCH_POLL_INTERVAL = 0.1  # faster reads while a wl-paste watcher runs
STABILIZE_TIMEOUT = 0.5  # debounce window for interactive selections
SUBPROCESS_TIMEOUT = 2.0
MIN_IMAGE_SIZE = 16  # payloads at or below this are placeholders
MAX_TEXT_SIZE = 1_000_000  # 1MB text limit
MAX_IMAGE_SIZE = 10_000_000  # 10MB image limit
MAX_PINNED_ENTRIES = 10
IMAGE_CACHE_SIZE = 10
META_REFRESH_INTERVAL = 5.0  # seconds before cached metadata is stale
LOG_PREVIEW_LENGTH = 50


def _parse_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _parse_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


def _parse_log_level() -> str:
    raw = os.environ.get("CLIPTRAIL_LOG_LEVEL", "INFO").upper()
    if raw not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        return "INFO"
    return raw


MAX_ENTRIES = _parse_int("CLIPTRAIL_MAX_ENTRIES", 1000, 1, 100_000)
LOG_LEVEL = _parse_log_level()

AUTO_DEDUPE = _parse_bool("CLIPTRAIL_AUTO_DEDUPE", True)
DEDUPE_INTERVAL = _parse_int("CLIPTRAIL_DEDUPE_INTERVAL", 10, 1, 24 * 60)  # minutes
AUTO_PRUNE = _parse_bool("CLIPTRAIL_AUTO_PRUNE", False)
PRUNE_INTERVAL = _parse_int("CLIPTRAIL_PRUNE_INTERVAL", 60, 1, 24 * 60)  # minutes
PRUNE_EMPTY = _parse_bool("CLIPTRAIL_PRUNE_EMPTY", True)
PRUNE_SINGLE_CHAR = _parse_bool("CLIPTRAIL_PRUNE_SINGLE_CHAR", True)
