import argparse
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler

from cliptrail import __version__
from cliptrail.config import DB_PATH, LOG_BACKUPS, LOG_LEVEL, LOG_MAX_BYTES, LOG_PATH, MAX_ENTRIES, THREATS_DB_PATH
from cliptrail.models import ThreatLevel
from cliptrail.storage import StorageError, StorageManager
from cliptrail.threat_memory import ThreatMemory, ThreatMemoryError
from cliptrail.utils import ensure_dirs

logger = logging.getLogger(__name__)


def setup_logging(level: str = LOG_LEVEL) -> None:
    ensure_dirs()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            RotatingFileHandler(LOG_PATH, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS),
            logging.StreamHandler(sys.stderr),
        ],
    )


def run_dedupe() -> int:
    """Remove duplicate entries from the history database."""
    try:
        with StorageManager(DB_PATH, MAX_ENTRIES) as storage:
            removed = storage.deduplicate_existing()
    except StorageError as e:
        print(f"Deduplication failed: {e}")
        return 1
    if removed:
        print(f"Removed {removed} duplicate entries.")
    else:
        print("No duplicate entries found.")
    return 0


def run_prune() -> int:
    """Remove entries with no data or single character data."""
    try:
        with StorageManager(DB_PATH, MAX_ENTRIES) as storage:
            removed = storage.prune_database(True, True)
    except StorageError as e:
        print(f"Pruning failed: {e}")
        return 1
    print(f"Pruned {removed} entries.")
    return 0


def run_rescan() -> int:
    """Reclassify every stored entry and report how threat levels moved."""
    try:
        with StorageManager(DB_PATH, MAX_ENTRIES) as storage:
            stats = storage.rescan_security_threats()
    except StorageError as e:
        print(f"Security rescan failed: {e}")
        return 1

    print(f"Scanned {stats.items_scanned} of {stats.total_items} entries.")
    print(f"{'level':<8} {'before':>7} {'after':>7}")
    for level in ThreatLevel:
        print(f"{level.value:<8} {stats.before[level]:>7} {stats.after[level]:>7}")
    print(f"Threats: {stats.threats_before} -> {stats.threats_after}")
    print(f"Upgraded: {stats.upgraded}  Downgraded: {stats.downgraded}  Unchanged: {stats.unchanged}")
    return 0


def show_threats() -> int:
    try:
        with ThreatMemory(THREATS_DB_PATH) as memory:
            stats = memory.stats()
    except ThreatMemoryError as e:
        print(f"Cannot read threat memory: {e}")
        return 1

    print(f"Dismissed threats: {stats.total_hashes} ({stats.high_confidence_count} high confidence)")
    for threat_type, count in stats.threat_types.items():
        print(f"  {threat_type}: {count}")
    return 0


def forget_threats() -> int:
    """Clear all dismissed threats so they are reported again."""
    try:
        with ThreatMemory(THREATS_DB_PATH) as memory:
            removed = memory.clear()
    except ThreatMemoryError as e:
        print(f"Cannot clear threat memory: {e}")
        return 1
    print(f"Removed {removed} dismissed threats.")
    return 0


def run_daemon() -> int:
    """Run the clipboard capture daemon in the foreground."""
    setup_logging()

    from cliptrail.backends import select_source
    from cliptrail.daemon import ClipboardDaemon
    from cliptrail.threat_memory import open_threat_memory

    logger.info("Starting cliptrail %s with log level %s", __version__, LOG_LEVEL)
    threat_memory = open_threat_memory(THREATS_DB_PATH)
    try:
        with StorageManager(DB_PATH, MAX_ENTRIES) as storage:
            daemon = ClipboardDaemon(storage, select_source(), threat_memory)

            def _shutdown(signum, _frame):
                logger.info("Received signal %d, shutting down", signum)
                daemon.stop()

            signal.signal(signal.SIGINT, _shutdown)
            signal.signal(signal.SIGTERM, _shutdown)
            daemon.run()
    except StorageError:
        logger.exception("Failed to open clipboard history")
        return 1
    finally:
        if threat_memory is not None:
            threat_memory.close()
    return 0


COMMANDS = {
    "run": run_daemon,
    "dedupe": run_dedupe,
    "prune": run_prune,
    "rescan": run_rescan,
    "threats": show_threats,
    "forget-threats": forget_threats,
}


def main():
    parser = argparse.ArgumentParser(
        description="cliptrail - clipboard history daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run             Capture clipboard history in the foreground (default)
  dedupe          Remove duplicate entries from the history
  prune           Remove empty and single-character entries
  rescan          Re-run security detection over every entry
  threats         Summarize dismissed security threats
  forget-threats  Clear all dismissed security threats
""",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=sorted(COMMANDS),
        help="Command to run",
    )
    parser.add_argument("-v", "--version", action="version", version=f"cliptrail {__version__}")

    args = parser.parse_args()
    if args.command != "run":
        ensure_dirs()
    sys.exit(COMMANDS[args.command]())


if __name__ == "__main__":
    main()
