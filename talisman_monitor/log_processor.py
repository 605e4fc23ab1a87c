import asyncio
import datetime
import logging
import os
import re
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from .config import LOG_READER_POLL_SECONDS, LOG_LINE_QUEUE_WARN_SIZE
from .events import Event, Connect, Login, NewUserSignup, MenuChange, GenericActivity, Disconnect
from .state import SessionStateStore, MonitorState

log = logging.getLogger("TalismanMonitor.LogProcessor")


# --- Line Classification ---
@dataclass(frozen=True)
class LineRule:
    name: str
    pattern: re.Pattern
    build: Callable[[re.Match], Event]


ACTIVITY_VERBS = ("running door", "running script", "listing messages", "posting a message",
                  "listing fileareas", "listing file conferences")

# Order matters: several patterns overlap, so the first match wins.
CLASSIFIER_RULES: Tuple[LineRule, ...] = (
    LineRule("connect",
             re.compile(r'INFO: Connection From: (.+?) on Node (\d+)'),
             lambda m: Connect(int(m.group(2)), m.group(1))),
    LineRule("new_user",
             re.compile(r'INFO: New user signing up on node (\d+)'),
             lambda m: NewUserSignup(int(m.group(1)))),
    LineRule("login",
             re.compile(r'INFO: (.+?) logged in on node (\d+)'),
             lambda m: Login(int(m.group(2)), m.group(1))),
    LineRule("menu",
             re.compile(r'INFO: (.+?) loading menu (.+?) on node (\d+)'),
             lambda m: MenuChange(int(m.group(3)), m.group(1), m.group(2))),
    LineRule("activity",
             re.compile(r'INFO: (.+?) (' + '|'.join(ACTIVITY_VERBS) + r') (.+?) on node (\d+)'),
             lambda m: GenericActivity(int(m.group(4)), m.group(1), m.group(2), m.group(3))),
    LineRule("disconnect",
             re.compile(r'INFO: Node (\d+) logged off'),
             lambda m: Disconnect(int(m.group(1)))),
)


def classify(line: str) -> Optional[Event]:
    """
    Turns one raw log line into a typed event, or None if the line is not one we track.
    Never raises; a line that matches nothing is simply ignored.
    """
    if not isinstance(line, str):
        return None
    line = line.rstrip('\r\n')
    for rule in CLASSIFIER_RULES:
        match = rule.pattern.search(line)
        if match:
            return rule.build(match)
    return None


LINE_DATE_RE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})')


def parse_line_date(line: str) -> Optional[datetime.date]:
    """Returns the YYYY-MM-DD date a log line starts with, if any."""
    if not isinstance(line, str):
        return None
    match = LINE_DATE_RE.match(line)
    if not match:
        return None
    try:
        return datetime.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


# --- History Scans ---
def is_call_on(line: str, day: datetime.date, excluded_users: FrozenSet[str]) -> bool:
    if parse_line_date(line) != day:
        return False
    event = classify(line)
    return isinstance(event, Login) and event.user not in excluded_users


def count_todays_calls(lines: Iterable[str], today: datetime.date, excluded_users: Iterable[str] = ()) -> int:
    """Counts login lines dated `today`, skipping excluded users. Every login counts, not unique users."""
    excluded = frozenset(excluded_users)
    return sum(1 for line in lines if is_call_on(line, today, excluded))


def find_last_logged_off_user(lines: Iterable[str]) -> Optional[str]:
    """Replays lines through a scratch session store and returns the last user seen logging off."""
    logoffs: List[str] = []
    scratch = SessionStateStore(on_logoff=logoffs.append)
    for line in lines:
        event = classify(line)
        if event is not None:
            scratch.apply(event)
    return logoffs[-1] if logoffs else None


@dataclass(frozen=True)
class HistoryScan:
    todays_calls: int
    last_logged_off_user: Optional[str]
    end_offset: int
    line_count: int


def scan_log_history(log_path: str, history_lines: int, today: datetime.date,
                     excluded_users: Iterable[str] = ()) -> HistoryScan:
    """
    Reads the whole log once at startup: counts today's calls over every line and
    replays the last `history_lines` lines to find the most recent log-off.
    Returns the byte offset the scan stopped at so tailing can resume from there.
    """
    excluded = frozenset(excluded_users)
    recent: deque = deque(maxlen=max(history_lines, 0))
    todays_calls = 0
    line_count = 0

    with open(log_path, 'rb') as f:
        while True:
            raw = f.readline()
            if not raw:
                break
            if not raw.endswith(b'\n'):
                # Partial line still being written; the tailer will pick it up
                f.seek(-len(raw), os.SEEK_CUR)
                break
            line = raw.decode('utf-8', errors='replace')
            line_count += 1
            recent.append(line)
            if is_call_on(line, today, excluded):
                todays_calls += 1
        end_offset = f.tell()

    last_user = find_last_logged_off_user(recent)
    log.info(f"Scanned {line_count} log lines: {todays_calls} calls today, "
             f"last user '{last_user}' (from the last {len(recent)} lines).")
    return HistoryScan(todays_calls, last_user, end_offset, line_count)


# --- Live Ingestion ---
async def log_processor_task(monitor: MonitorState, line_queue: asyncio.Queue):
    """
    Consumes log lines in order, classifies them and applies the events to the shared state.
    This task is agnostic to where the lines come from.
    """
    log.info("Log processor task started.")
    try:
        while True:
            line = await line_queue.get()
            if line_queue.qsize() > LOG_LINE_QUEUE_WARN_SIZE:
                log.warning(f"Log processing is falling behind: {line_queue.qsize()} lines queued.")
            try:
                event = classify(line)
                if event is None:
                    continue
                logged_on = parse_line_date(line)
                async with monitor.lock:
                    monitor.apply(event, logged_on)
                log.debug(f"Applied {event}")
            except Exception:
                log.error(f"Error applying log line {line!r}, skipping it:", exc_info=True)
    except asyncio.CancelledError:
        log.warning("Log processor task is cancelled.")
        raise


def blocking_log_reader(log_path: str, loop: asyncio.AbstractEventLoop, aio_queue: asyncio.Queue,
                        shutdown_event: threading.Event, start_offset: Optional[int] = None,
                        wake_event: Optional[threading.Event] = None):
    """
    An event-driven log follower that runs in a separate thread.
    Uses watchdog for file system notifications and falls back to polling.
    Starts at `start_offset` (or the end of the file), re-opens on rotation and
    seeks back to the start when the file shrinks. Puts complete lines onto the queue.
    """
    log.info(f"Starting event-driven log reader for {log_path}")
    file_changed_event = wake_event or threading.Event()
    directory = os.path.dirname(log_path) or "."

    class ChangeHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            file_changed_event.set()

    if not os.path.isdir(directory):
        log.error(f"Cannot watch log file: directory '{directory}' does not exist. Reader thread will exit.")
        return

    observer = Observer()
    observer.schedule(ChangeHandler(), directory, recursive=False)
    observer.start()

    f = None
    current_inode = None
    resume_offset = start_offset
    try:
        while not shutdown_event.is_set():
            if f is None:
                try:
                    f = open(log_path, 'rb')
                    current_inode = os.fstat(f.fileno()).st_ino
                    size = os.fstat(f.fileno()).st_size
                    if resume_offset is not None and resume_offset <= size:
                        f.seek(resume_offset)
                    elif resume_offset is None:
                        f.seek(0, os.SEEK_END)
                    resume_offset = 0  # any later re-open is a new file, read it from the top
                    log.info(f"Tailing log file '{log_path}' with inode {current_inode} from offset {f.tell()}")
                except FileNotFoundError:
                    shutdown_event.wait(LOG_READER_POLL_SECONDS)
                    continue
                except OSError as e:
                    log.error(f"Error opening log file '{log_path}': {e}. Retrying in {LOG_READER_POLL_SECONDS}s.")
                    shutdown_event.wait(LOG_READER_POLL_SECONDS)
                    continue

            position = f.tell()
            # Cleared before reading so a change that lands after an empty read still wakes us
            file_changed_event.clear()
            try:
                raw = f.readline()
            except OSError as e:
                log.error(f"Error reading log file '{log_path}': {e}. Re-opening in {LOG_READER_POLL_SECONDS}s.")
                f.close()
                f = None
                resume_offset = position
                shutdown_event.wait(LOG_READER_POLL_SECONDS)
                continue
            if raw.endswith(b'\n'):
                loop.call_soon_threadsafe(aio_queue.put_nowait, raw.decode('utf-8', errors='replace'))
                continue
            if raw:
                # Incomplete line; wait for the writer to finish it
                f.seek(position)

            if shutdown_event.is_set():
                break
            file_changed_event.wait(timeout=LOG_READER_POLL_SECONDS)
            if shutdown_event.is_set():
                break

            try:
                st = os.stat(log_path)
                if st.st_ino != current_inode:
                    log.warning(f"Log rotation by inode change detected for '{log_path}'. Re-opening.")
                    f.close()
                    f = None
                    continue
                if f.tell() > st.st_size:
                    log.warning(f"Log truncation detected for '{log_path}'. Seeking to start.")
                    f.seek(0)
            except FileNotFoundError:
                log.warning(f"Log file '{log_path}' disappeared. Will attempt to re-open.")
                f.close()
                f = None
            except OSError as e:
                log.error(f"Error checking log status for '{log_path}': {e}. Re-opening.", exc_info=True)
                f.close()
                f = None
                shutdown_event.wait(LOG_READER_POLL_SECONDS)
    finally:
        observer.stop()
        observer.join()
        if f:
            f.close()
        log.info(f"Log reader for {log_path} has stopped.")
