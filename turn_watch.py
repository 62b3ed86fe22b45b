"""
Turn Watch (no UI)
- Watches a Dominions savedgames folder and keeps a versioned history of every
  turn file (*.trn) and pending-orders file (*.2h) per game folder.
- A new turn file -> TurnN_0 snapshot; new orders within a turn -> TurnN_1, TurnN_2, ...
- Remembers the last seen fingerprints across restarts via <data-dir>/hash.json.
- Polls every few seconds; filesystem events only wake the poller early.
- Static assets (maps, mods) are mirrored next to the snapshots on every pass.
- Single instance per data directory (OS file lock + PID token).
- Styled console output; log file is always plain and trimmed to 30 days.
- Locked-file suppression: a file held open by the game is reported once per hour.

Usage
  pip install watchdog pathspec colorama filelock psutil
  python turn_watch.py
  python turn_watch.py --data-dir "/path/to/data" --interval 10 --once
"""

from __future__ import annotations

import argparse
import configparser
import datetime as dt
import errno
import hashlib
import json
import logging
import os
import shutil
import signal
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil
from filelock import FileLock, Timeout
from pathspec import PathSpec
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

try:
    from colorama import init as colorama_init  # type: ignore
except Exception:  # pragma: no cover
    colorama_init = None

APP_NAME = "TurnWatch"

CONFIG_NAME = "config.ini"
HASH_NAME = "hash.json"
LOG_NAME = "daemon.log"
LOCK_NAME = "turn_watch.lock"
PID_NAME = "turn_watch.pid"

# holds the game's own data, never a player game folder
RESERVED_FOLDER = "newlords"

TICK_INTERVAL_SEC = 10.0
SETTLE_SEC = 2.0
CLEANUP_INTERVAL_SEC = 24 * 60 * 60
LOG_RETENTION_DAYS = 30
LOCK_HOLD_HOURS = 1

LOG_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

TURN_PATTERNS = ["*.trn"]
PENDING_PATTERNS = ["*.2h"]
STATIC_PATTERNS = [
    # Maps
    "*.map",
    "*.tga",
    "*.rgb",
    # Mods
    "*.d6m",
    "*.dm",
]

STARTING = "STARTING"
RUNNING = "RUNNING"
STOPPING = "STOPPING"


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "TURN": Ansi.GREEN,
    "SAVE": Ansi.CYAN,
    "COPY": Ansi.GREEN,
    "STATIC": Ansi.LIGHT_BROWN,
    "SET_ASIDE": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        if action and action in base:
            action_color = Ansi.ORANGE if record.levelno >= logging.WARNING else ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def setup_logger(log_path: Path) -> tuple[logging.Logger, logging.FileHandler]:
    """
    (Re)configure the "turn_watch" logger: plain lines to log_path, styled lines to stdout.
    Raises OSError when the log file cannot be opened.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("turn_watch")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    if colorama_init:
        colorama_init()

    fmt = "[%(asctime)s] %(levelname)s | %(message)s"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=LOG_TS_FORMAT))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=LOG_TS_FORMAT))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger, fh


def close_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        try:
            handler.flush()
        finally:
            logger.removeHandler(handler)
            handler.close()


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = is_dir
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Log retention
# -------------------------

def parse_log_timestamp(line: str) -> Optional[dt.datetime]:
    if len(line) < 21 or line[0] != "[" or line[20] != "]":
        return None
    try:
        return dt.datetime.strptime(line[1:20], LOG_TS_FORMAT)
    except ValueError:
        return None


def trim_log(
    log_path: Path,
    max_age: dt.timedelta,
    now: Optional[dt.datetime] = None,
    handler: Optional[logging.Handler] = None,
) -> tuple[int, int]:
    """
    Drop lines older than max_age. A line exactly max_age old is kept, lines
    without a parseable timestamp are kept, blank lines are dropped.

    The file is rewritten in place so an open append-mode handler keeps working;
    a rename would leave the handler writing to the old file. A crash during the
    rewrite can truncate the log, which is accepted: the log is diagnostics only.
    Returns (kept, dropped).
    """
    now = now or dt.datetime.now()
    if handler is not None:
        handler.acquire()
    try:
        if handler is not None:
            handler.flush()
        try:
            lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except FileNotFoundError:
            return 0, 0

        kept: list[str] = []
        dropped = 0
        for line in lines:
            if not line.strip():
                continue
            ts = parse_log_timestamp(line)
            if ts is None or now - ts <= max_age:
                kept.append(line)
            else:
                dropped += 1

        if dropped:
            with log_path.open("w", encoding="utf-8") as f:
                f.write("".join(f"{line}\n" for line in kept))
        return len(kept), dropped
    finally:
        if handler is not None:
            handler.release()


# -------------------------
# Locked suppression
# -------------------------

def _is_locked_error(exc: Exception) -> bool:
    winerror = getattr(exc, "winerror", None)
    if winerror == 32:  # ERROR_SHARING_VIOLATION
        return True
    err = getattr(exc, "errno", None)
    return err in {errno.EACCES, errno.EPERM}


class LockedFileTracker:
    """
    Suppresses repeated warnings for the same locked path within a hold window.
    The game keeps its files open while writing, so a copy can fail on every
    tick for a while; one warning per hold window is enough.
    """

    def __init__(self, hold_hours: float = LOCK_HOLD_HOURS):
        self.hold = dt.timedelta(hours=hold_hours)
        self._next_report: dict[str, dt.datetime] = {}

    def should_report(self, path: Path) -> bool:
        nxt = self._next_report.get(str(path))
        return nxt is None or dt.datetime.now() >= nxt

    def mark_reported(self, path: Path) -> None:
        self._next_report[str(path)] = dt.datetime.now() + self.hold

    def clear(self, path: Path) -> None:
        self._next_report.pop(str(path), None)

    def maybe_report_locked(
        self,
        logger: logging.Logger,
        action: str,
        path: Path,
        reason: str,
        error: Exception,
    ) -> None:
        if not self.should_report(path):
            return
        self.mark_reported(path)
        log_action(
            logger,
            action,
            f"SKIP locked ({reason}) {path} | {error}",
            path=path,
            level=logging.WARNING,
        )


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class BackupConfig:
    mode: str
    source: Path
    destination: Path

    @property
    def enabled(self) -> bool:
        return self.mode.strip() == "1"


@dataclass(frozen=True)
class DaemonSettings:
    data_dir: Path
    tick_interval_sec: float = TICK_INTERVAL_SEC
    settle_sec: float = SETTLE_SEC
    cleanup_interval_sec: float = CLEANUP_INTERVAL_SEC
    log_retention_days: int = LOG_RETENTION_DAYS
    watch_events: bool = True
    once: bool = False

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_NAME

    @property
    def hash_path(self) -> Path:
        return self.data_dir / HASH_NAME

    @property
    def log_path(self) -> Path:
        return self.data_dir / LOG_NAME

    @property
    def lock_path(self) -> Path:
        return self.data_dir / LOCK_NAME

    @property
    def pid_path(self) -> Path:
        return self.data_dir / PID_NAME


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Keep a versioned backup of Dominions turn and order files.")
    p.add_argument("--data-dir", type=str, default=None, help="Folder holding config.ini, hash.json and daemon.log.")
    p.add_argument("--interval", type=float, default=TICK_INTERVAL_SEC, help="Seconds between detection passes.")
    p.add_argument("--settle", type=float, default=SETTLE_SEC, help="Seconds to wait after a file event before re-checking.")
    p.add_argument("--retention-days", type=int, default=LOG_RETENTION_DAYS, help="Days of log history to keep.")
    p.add_argument("--no-watch", action="store_true", help="Poll only; do not subscribe to filesystem events.")
    p.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    return p.parse_args(argv)


def resolve_data_dir(raw: Optional[str]) -> Path:
    """Raises OSError/RuntimeError when no usable data directory can be created."""
    if raw:
        base = Path(raw).expanduser()
    elif os.name == "nt" and os.environ.get("APPDATA"):
        base = Path(os.environ["APPDATA"]) / APP_NAME
    else:
        base = Path.home() / ".turn_watch"
    base.mkdir(parents=True, exist_ok=True)
    return base.resolve()


def build_settings(args: argparse.Namespace, data_dir: Path) -> DaemonSettings:
    return DaemonSettings(
        data_dir=data_dir,
        tick_interval_sec=max(1.0, float(args.interval)),
        settle_sec=max(0.0, float(args.settle)),
        log_retention_days=max(1, int(args.retention_days)),
        watch_events=not args.no_watch,
        once=bool(args.once),
    )


def read_config(path: Path) -> BackupConfig:
    """
    Read Mode/Source/Destination from a key=value file. The [BackupConfig]
    header is optional. Raises OSError if unreadable, ValueError if incomplete.
    """
    text = path.read_text(encoding="utf-8-sig")
    if not any(line.strip().startswith("[") for line in text.splitlines()):
        text = "[BackupConfig]\n" + text

    parser = configparser.ConfigParser(interpolation=None, strict=False)
    try:
        parser.read_string(text, source=str(path))
    except configparser.Error as e:
        raise ValueError(f"Malformed config {path}: {e}") from e

    values: dict[str, str] = {}
    for section in parser.sections():
        for key, value in parser.items(section):
            values.setdefault(key, value.strip().strip('"'))

    missing = [k for k in ("mode", "source", "destination") if not values.get(k)]
    if missing:
        raise ValueError(f"Config {path} is missing: {', '.join(missing)}")

    source = Path(values["source"]).expanduser()
    destination = Path(values["destination"]).expanduser()
    if _is_subpath(destination, source):
        raise ValueError("Destination folder must NOT be inside Source folder (it would be backed up as a game).")

    return BackupConfig(mode=values["mode"], source=source, destination=destination)


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except Exception:
        return False


# -------------------------
# Single instance
# -------------------------

class SingleInstanceGuard:
    """
    One daemon per data directory.

    The OS advisory lock on lock_path is what guarantees exclusivity; it is held
    until release() or process death. The PID token is written only by the
    lock holder and is informational, so a reused PID cannot block a start.
    """

    def __init__(self, lock_path: Path, pid_path: Path):
        self.lock_path = lock_path
        self.pid_path = pid_path
        self._lock = FileLock(str(lock_path), timeout=0)

    def acquire(self) -> bool:
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        try:
            self.pid_path.write_text(str(os.getpid()), encoding="utf-8")
        except OSError:
            self._lock.release()
            raise
        return True

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release()

    def token_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def running_pid(self) -> Optional[int]:
        pid = self.token_pid()
        if pid is not None and psutil.pid_exists(pid):
            return pid
        return None


# -------------------------
# Change detection
# -------------------------

@dataclass(frozen=True)
class WatchedFolder:
    name: str
    path: Path


@dataclass(frozen=True)
class FingerprintState:
    turn_number: int = 0
    save_count: int = 0
    trn_fingerprint: int = 0
    two_h_fingerprint: int = 0

    def to_dict(self) -> dict:
        return {
            "turnNumber": self.turn_number,
            "saveCount": self.save_count,
            "trnFingerprint": self.trn_fingerprint,
            "twoHFingerprint": self.two_h_fingerprint,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "FingerprintState":
        """Raises ValueError on a malformed entry."""
        if not isinstance(raw, dict):
            raise ValueError(f"expected object, got {type(raw).__name__}")

        def field(key: str, upper: Optional[int] = None) -> int:
            value = raw.get(key, 0)
            if isinstance(value, bool):
                raise ValueError(f"{key} is not an integer")
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} is not an integer") from None
            if value < 0 or (upper is not None and value >= upper):
                raise ValueError(f"{key} out of range: {value}")
            return value

        return cls(
            turn_number=field("turnNumber"),
            save_count=field("saveCount"),
            trn_fingerprint=field("trnFingerprint", 2**64),
            two_h_fingerprint=field("twoHFingerprint", 2**64),
        )


@dataclass(frozen=True)
class Fingerprints:
    trn: int
    two_h: int
    trn_files: tuple[Path, ...] = ()
    two_h_files: tuple[Path, ...] = ()


def _digest_to_int(h) -> int:
    return int.from_bytes(h.digest(), "big")


EMPTY_FINGERPRINT = _digest_to_int(hashlib.blake2b(b"", digest_size=8))


class FileSetMatcher:
    """Name patterns for the three kinds of files in a game folder (top level only)."""

    def __init__(
        self,
        turn_patterns: list[str] = TURN_PATTERNS,
        pending_patterns: list[str] = PENDING_PATTERNS,
        static_patterns: list[str] = STATIC_PATTERNS,
    ):
        self.turn = PathSpec.from_lines("gitwildmatch", turn_patterns)
        self.pending = PathSpec.from_lines("gitwildmatch", pending_patterns)
        self.static = PathSpec.from_lines("gitwildmatch", static_patterns)

    @staticmethod
    def _files(folder: Path, spec: PathSpec) -> list[Path]:
        return sorted(
            (p for p in folder.iterdir() if p.is_file() and spec.match_file(p.name)),
            key=lambda p: p.name,
        )

    def turn_files(self, folder: Path) -> list[Path]:
        return self._files(folder, self.turn)

    def pending_files(self, folder: Path) -> list[Path]:
        return self._files(folder, self.pending)

    def static_files(self, folder: Path) -> list[Path]:
        return self._files(folder, self.static)

    def is_tracked(self, name: str) -> bool:
        return self.turn.match_file(name) or self.pending.match_file(name)


def fingerprint_files(paths: list[Path], chunk_size: int = 1024 * 1024) -> int:
    """64-bit BLAKE2b over each file's name and full content, in the given order."""
    h = hashlib.blake2b(digest_size=8)
    for path in paths:
        h.update(path.name.encode("utf-8"))
        h.update(b"\0")
        with path.open("rb") as f:
            while True:
                b = f.read(chunk_size)
                if not b:
                    break
                h.update(b)
    return _digest_to_int(h)


def detect(folder: Path, files: FileSetMatcher) -> Fingerprints:
    """Read-only. Raises OSError if the folder or one of its files cannot be read."""
    trn_files = files.turn_files(folder)
    two_h_files = files.pending_files(folder)
    return Fingerprints(
        trn=fingerprint_files(trn_files),
        two_h=fingerprint_files(two_h_files),
        trn_files=tuple(trn_files),
        two_h_files=tuple(two_h_files),
    )


def next_state(stored: FingerprintState, current: Fingerprints) -> Optional[FingerprintState]:
    """The state after a change, or None when nothing changed. A new turn always wins."""
    if current.trn != stored.trn_fingerprint:
        return FingerprintState(
            turn_number=stored.turn_number + 1,
            save_count=0,
            trn_fingerprint=current.trn,
            two_h_fingerprint=current.two_h,
        )
    if current.two_h != stored.two_h_fingerprint:
        return FingerprintState(
            turn_number=stored.turn_number,
            save_count=stored.save_count + 1,
            trn_fingerprint=current.trn,
            two_h_fingerprint=current.two_h,
        )
    return None


def list_watched_folders(source: Path) -> list[WatchedFolder]:
    """Raises OSError when source cannot be listed."""
    return [
        WatchedFolder(name=p.name, path=p)
        for p in sorted(source.iterdir(), key=lambda p: p.name)
        if p.is_dir() and p.name != RESERVED_FOLDER
    ]


# -------------------------
# Hash store
# -------------------------

class HashStore:
    def __init__(self, path: Path, states: Optional[dict[str, FingerprintState]] = None):
        self.path = path
        self.states: dict[str, FingerprintState] = dict(states or {})
        self.dirty = False

    @classmethod
    def load(cls, path: Path, logger: logging.Logger) -> "HashStore":
        """Never raises: a missing, unreadable or corrupt file yields an empty store."""
        if not path.exists():
            logger.info("No hash state at %s, starting fresh", path)
            return cls(path)

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Hash state unreadable, starting fresh: %s | %s", path, e)
            return cls(path)

        if not isinstance(raw, dict):
            logger.warning("Hash state is not a mapping, starting fresh: %s", path)
            return cls(path)

        states: dict[str, FingerprintState] = {}
        for name, entry in raw.items():
            try:
                states[name] = FingerprintState.from_dict(entry)
            except ValueError as e:
                logger.warning("Hash state entry %r dropped: %s", name, e)

        logger.info("Loaded hash state for %d folder(s) from %s", len(states), path)
        return cls(path, states)

    def get(self, name: str) -> FingerprintState:
        return self.states.get(name, FingerprintState())

    def put(self, name: str, state: FingerprintState) -> None:
        if self.states.get(name) != state:
            self.states[name] = state
            self.dirty = True

    def serialize(self) -> str:
        payload = {name: state.to_dict() for name, state in self.states.items()}
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    def save(self) -> None:
        """Write to a temp sibling, fsync, then rename over the target. Raises OSError."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(self.serialize())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        self.dirty = False


# -------------------------
# Snapshots
# -------------------------

@dataclass
class DaemonContext:
    settings: DaemonSettings
    logger: logging.Logger
    log_handler: Optional[logging.Handler]
    backup: Optional[BackupConfig]
    hash_store: HashStore
    files: FileSetMatcher
    locked: LockedFileTracker


def snapshot_name(state: FingerprintState) -> str:
    return f"Turn{state.turn_number}_{state.save_count}"


def bak_root(folder_dst: Path, when: dt.datetime) -> Path:
    return folder_dst / ".bak" / when.strftime("%Y-%m-%d") / when.strftime("%H%M%S")


@dataclass
class PendingCopies:
    """Snapshot files that could not be copied, tied to the state that produced them."""

    target: Path
    state: FingerprintState
    files: list[Path]


class SnapshotEngine:
    def __init__(self, ctx: DaemonContext):
        self.ctx = ctx
        # folder name -> files missing from its latest snapshot
        self._pending: dict[str, PendingCopies] = {}

    @property
    def logger(self) -> logging.Logger:
        return self.ctx.logger

    def _copy(self, src: Path, dst: Path, action: str, reason: str) -> bool:
        try:
            shutil.copy2(src, dst)
        except Exception as e:
            if _is_locked_error(e):
                self.ctx.locked.maybe_report_locked(self.logger, action, src, reason, e)
                return False
            log_action(self.logger, action, f"ERROR ({reason}) {src} -> {dst} | {e}", path=dst, level=logging.ERROR)
            return False
        self.ctx.locked.clear(src)
        return True

    def copy_static(self, folder: WatchedFolder, folder_dst: Path) -> int:
        try:
            statics = self.ctx.files.static_files(folder.path)
        except OSError as e:
            log_action(self.logger, "STATIC", f"ERROR listing {folder.path} | {e}", path=folder.path, is_dir=True, level=logging.ERROR)
            return 0

        copied = 0
        for src in statics:
            if self._copy(src, folder_dst / src.name, "STATIC", "static"):
                copied += 1
        return copied

    def _prepare_target(self, target: Path, when: dt.datetime) -> bool:
        if target.exists():
            aside = bak_root(target.parent, when) / target.name
            n = 1
            while aside.exists():
                aside = aside.with_name(f"{target.name}.{n}")
                n += 1
            try:
                aside.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(target), str(aside))
                log_action(self.logger, "SET_ASIDE", f"existing {target} -> {aside}", path=aside, is_dir=True, level=logging.WARNING)
            except Exception as e:
                log_action(self.logger, "SET_ASIDE", f"ERROR {target} | {e}", path=target, is_dir=True, level=logging.ERROR)
                return False
        target.mkdir(parents=True, exist_ok=True)
        return True

    def _copy_into(self, target: Path, files: list[Path], reason: str) -> list[Path]:
        failed = []
        for src in files:
            dst = target / src.name
            if self._copy(src, dst, "COPY", reason):
                log_action(self.logger, "COPY", f"{src} -> {dst}", path=dst)
            else:
                failed.append(src)
        return failed

    def _retry_pending(self, folder: WatchedFolder, current: Fingerprints) -> None:
        pending = self._pending.get(folder.name)
        if pending is None:
            return
        state = pending.state
        # only while the snapshot is still the latest and its files are unchanged
        if (
            self.ctx.hash_store.get(folder.name) != state
            or current.trn != state.trn_fingerprint
            or current.two_h != state.two_h_fingerprint
        ):
            log_action(self.logger, "COPY", f"{folder.name}: giving up on {len(pending.files)} file(s) for {pending.target.name}", path=pending.target, is_dir=True, level=logging.WARNING)
            del self._pending[folder.name]
            return

        failed = self._copy_into(pending.target, pending.files, f"{pending.target.name} retry")
        if failed:
            pending.files = failed
        else:
            del self._pending[folder.name]
            log_action(self.logger, "COPY", f"{folder.name}: {pending.target.name} complete", path=pending.target, is_dir=True)

    def process_folder(self, folder: WatchedFolder, destination: Path) -> bool:
        """
        One detection step for one folder. Returns True when a new state was
        put in the hash store. A snapshot with failed copies is still committed;
        its missing files are retried while the state stays current.
        """
        folder_dst = destination / folder.name
        try:
            folder_dst.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log_action(self.logger, "COPY", f"ERROR mkdir {folder_dst} | {e}", path=folder_dst, is_dir=True, level=logging.ERROR)
            return False

        self.copy_static(folder, folder_dst)

        try:
            current = detect(folder.path, self.ctx.files)
        except OSError as e:
            if _is_locked_error(e):
                self.ctx.locked.maybe_report_locked(self.logger, "TURN", folder.path, "fingerprint", e)
            else:
                log_action(self.logger, "TURN", f"ERROR fingerprint {folder.path} | {e}", path=folder.path, is_dir=True, level=logging.ERROR)
            return False

        self._retry_pending(folder, current)

        stored = self.ctx.hash_store.get(folder.name)
        new = next_state(stored, current)
        if new is None:
            return False

        action = "TURN" if new.turn_number != stored.turn_number else "SAVE"
        target = folder_dst / snapshot_name(new)
        log_action(self.logger, action, f"{folder.name}: {snapshot_name(stored)} -> {snapshot_name(new)}", path=target, is_dir=True)

        try:
            if not self._prepare_target(target, dt.datetime.now()):
                return False
        except OSError as e:
            log_action(self.logger, action, f"ERROR mkdir {target} | {e}", path=target, is_dir=True, level=logging.ERROR)
            return False

        self.ctx.hash_store.put(folder.name, new)

        failed = self._copy_into(target, list(current.trn_files + current.two_h_files), snapshot_name(new))
        if failed:
            self._pending[folder.name] = PendingCopies(target=target, state=new, files=failed)
            log_action(
                self.logger,
                action,
                f"{folder.name}: {len(failed)} file(s) not copied into {target.name}, retrying while unchanged",
                path=target,
                is_dir=True,
                level=logging.WARNING,
            )
        else:
            self._pending.pop(folder.name, None)
        return True


# -------------------------
# Event wake-up
# -------------------------

class TurnFileHandler(FileSystemEventHandler):
    """Sets the wake event on turn/order file changes; the poller decides what changed."""

    WAKE_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, EVENT_TYPE_DELETED}

    def __init__(self, source_root: Path, files: FileSetMatcher, wake: threading.Event):
        self.source_root = source_root
        self.files = files
        self.wake = wake

    def _is_relevant(self, raw_path) -> bool:
        if not raw_path:
            return False
        path = Path(os.fsdecode(raw_path))
        try:
            rel = path.relative_to(self.source_root)
        except ValueError:
            return False
        if len(rel.parts) < 2 or rel.parts[0] == RESERVED_FOLDER:
            return False
        return self.files.is_tracked(path.name)

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in self.WAKE_EVENTS:
            return
        if self._is_relevant(event.src_path) or self._is_relevant(getattr(event, "dest_path", None)):
            self.wake.set()


# -------------------------
# Daemon loop
# -------------------------

class DaemonLoop:
    def __init__(self, ctx: DaemonContext):
        self.ctx = ctx
        self.engine = SnapshotEngine(ctx)
        self.state = STARTING
        self.passes = 0
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._last_trim: Optional[float] = None

    @property
    def logger(self) -> logging.Logger:
        return self.ctx.logger

    def request_stop(self) -> None:
        self._stop.set()
        self._wake.set()

    def run_pass(self) -> bool:
        """One sweep over every watched folder. Returns True if the hash store changed."""
        self.passes += 1
        self.logger.info("Daemon heartbeat...")

        backup = self.ctx.backup
        if backup is None or not backup.enabled:
            return False

        if not backup.source.is_dir():
            self.logger.error("Source folder does not exist: %s", backup.source)
            return False
        if not backup.destination.is_dir():
            self.logger.error("Destination folder does not exist: %s", backup.destination)
            return False

        try:
            folders = list_watched_folders(backup.source)
        except OSError as e:
            self.logger.error("Failed to read source folder: %s | %s", backup.source, e)
            return False

        changed = False
        for folder in folders:
            try:
                changed = self.engine.process_folder(folder, backup.destination) or changed
            except Exception as e:
                log_action(self.logger, "TURN", f"folder processing error: {folder.path} | {e}", path=folder.path, is_dir=True, level=logging.ERROR)

        store = self.ctx.hash_store
        if store.dirty:
            try:
                store.save()
            except OSError as e:
                self.logger.error("Could not save hash state %s | %s", store.path, e)
        return changed

    def maybe_trim(self) -> None:
        now = time.monotonic()
        if self._last_trim is not None and now - self._last_trim < self.ctx.settings.cleanup_interval_sec:
            return
        self._last_trim = now
        try:
            kept, dropped = trim_log(
                self.ctx.settings.log_path,
                dt.timedelta(days=self.ctx.settings.log_retention_days),
                handler=self.ctx.log_handler,
            )
        except OSError as e:
            self.logger.error("Log cleanup failed: %s", e)
            return
        if dropped:
            self.logger.info("Log cleanup: dropped %d line(s), kept %d", dropped, kept)

    def _start_observer(self):
        backup = self.ctx.backup
        if not self.ctx.settings.watch_events or backup is None or not backup.enabled:
            return None
        if not backup.source.is_dir():
            return None

        source = backup.source.resolve()
        observer = Observer()
        observer.schedule(TurnFileHandler(source, self.ctx.files, self._wake), str(source), recursive=True)
        try:
            observer.start()
        except Exception as e:
            self.logger.warning("File events unavailable, polling only: %s", e)
            return None
        self.logger.info("Watching for file events under %s", source)
        return observer

    def _wait(self, timeout: float) -> None:
        if not self._wake.wait(timeout) or self._stop.is_set():
            return
        # let the game finish writing before fingerprinting
        self._stop.wait(self.ctx.settings.settle_sec)

    def _install_signals(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, lambda signum, frame: self.request_stop())
        return previous

    def run(self) -> int:
        self.state = RUNNING
        settings = self.ctx.settings
        if self.ctx.backup is not None and not self.ctx.backup.enabled:
            self.logger.info("Mode=%s: backups disabled, heartbeat only", self.ctx.backup.mode)

        previous = self._install_signals()
        observer = self._start_observer()
        try:
            while not self._stop.is_set():
                start = time.monotonic()
                self._wake.clear()
                self.run_pass()
                self.maybe_trim()
                if settings.once:
                    break
                elapsed = time.monotonic() - start
                self._wait(max(0.0, settings.tick_interval_sec - elapsed))
        finally:
            self.state = STOPPING
            if observer is not None:
                observer.stop()
                observer.join(timeout=10)
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self.logger.info("Stopped.")
        return 0


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        data_dir = resolve_data_dir(args.data_dir)
    except (OSError, RuntimeError) as e:
        print(f"Cannot use data directory: {e}", file=sys.stderr)
        return 1
    settings = build_settings(args, data_dir)

    guard = SingleInstanceGuard(settings.lock_path, settings.pid_path)
    try:
        acquired = guard.acquire()
    except OSError as e:
        print(f"Cannot take instance lock {settings.lock_path}: {e}", file=sys.stderr)
        return 1
    if not acquired:
        pid = guard.running_pid()
        print(f"Daemon already running with PID {pid}" if pid else "Daemon already running")
        return 0

    try:
        try:
            logger, log_handler = setup_logger(settings.log_path)
        except OSError as e:
            print(f"Failed to open {settings.log_path}: {e}", file=sys.stderr)
            return 1

        logger.info("Turn watch daemon started (PID %d).", os.getpid())

        backup: Optional[BackupConfig] = None
        try:
            backup = read_config(settings.config_path)
            logger.info("Config loaded: Mode=%s, Destination=%s, Source=%s", backup.mode, backup.destination, backup.source)
        except (OSError, ValueError) as e:
            logger.error("Failed to read config: %s", e)

        ctx = DaemonContext(
            settings=settings,
            logger=logger,
            log_handler=log_handler,
            backup=backup,
            hash_store=HashStore.load(settings.hash_path, logger),
            files=FileSetMatcher(),
            locked=LockedFileTracker(hold_hours=LOCK_HOLD_HOURS),
        )
        try:
            return DaemonLoop(ctx).run()
        except KeyboardInterrupt:
            logger.info("Stopping...")
            return 0
        finally:
            close_logger(logger)
    finally:
        guard.release()


if __name__ == "__main__":
    raise SystemExit(main())
