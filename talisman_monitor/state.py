import asyncio
import datetime
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from .config import IDLE_USER, IDLE_LOCATION, NO_LAST_USER
from .events import (
    Event, Connect, Login, NewUserSignup, MenuChange, GenericActivity, Disconnect,
    UNKNOWN_USER, NEW_USER,
)

log = logging.getLogger("TalismanMonitor.State")

LOGGING_IN = "logging in..."
SIGNING_UP = "Signing up..."


# --- Location Formatting ---
LOCATION_PREFIX = "At "
FILE_EXTENSION_RE = re.compile(r'\.\w+$')


def _capitalize_words(text: str) -> str:
    # Only the first letter of each word; "lORD" stays "LORD", not "Lord"
    return " ".join(word[:1].upper() + word[1:] for word in text.split(" "))


def format_location(raw: str) -> str:
    """'menus/main.toml' -> 'At Main', 'menu file_areas.toml' -> 'At File_areas'."""
    text = raw.strip()
    if text.startswith("menu "):
        text = text[len("menu "):]
    if text.startswith("menus/"):
        text = text[len("menus/"):]
    text = FILE_EXTENSION_RE.sub("", text)
    return LOCATION_PREFIX + _capitalize_words(text)


@dataclass(frozen=True)
class SessionStatus:
    user: str
    location: str


IDLE_STATUS = SessionStatus(IDLE_USER, IDLE_LOCATION)


class SessionStateStore:
    """
    Per-node session state built from classified log events.

    `sessions` holds what is displayed for every occupied node; `active_users`
    holds the identity of whoever completed a login on that node. The two are
    kept apart because the display text changes on every activity while the
    identity lives until the node logs off.
    """

    def __init__(self, on_logoff: Optional[Callable[[str], None]] = None):
        self.sessions: Dict[int, SessionStatus] = {}
        self.active_users: Dict[int, str] = {}
        self.on_logoff = on_logoff

    def apply(self, event: Event) -> int:
        """Applies one event and returns the node it touched."""
        node = event.node
        if isinstance(event, Connect):
            self.sessions[node] = SessionStatus(UNKNOWN_USER, event.remote_addr)
        elif isinstance(event, Login):
            self.sessions[node] = SessionStatus(event.user, LOGGING_IN)
            self.active_users[node] = event.user
        elif isinstance(event, NewUserSignup):
            # No identity yet; the real name only shows up on a later login
            self.sessions[node] = SessionStatus(NEW_USER, SIGNING_UP)
        elif isinstance(event, MenuChange):
            self.sessions[node] = SessionStatus(event.user, format_location(event.menu_path))
        elif isinstance(event, GenericActivity):
            self.sessions[node] = SessionStatus(event.user, format_location(event.activity_label))
        elif isinstance(event, Disconnect):
            user = self.active_users.pop(node, None)
            self.sessions.pop(node, None)
            if user is not None and user != NEW_USER and self.on_logoff:
                self.on_logoff(user)
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")
        return node

    def status(self, node: int) -> SessionStatus:
        return self.sessions.get(node, IDLE_STATUS)


@dataclass
class CallStats:
    """Running call statistics: today's call count and the last user to log off."""
    excluded_users: FrozenSet[str] = field(default_factory=frozenset)
    today: Optional[datetime.date] = None
    todays_calls: int = 0
    last_logged_off_user: str = NO_LAST_USER

    def seed(self, today: datetime.date, todays_calls: int, last_logged_off_user: Optional[str]):
        self.today = today
        self.todays_calls = todays_calls
        if last_logged_off_user:
            self.last_logged_off_user = last_logged_off_user

    def roll_over(self, today: datetime.date) -> bool:
        """Starts a new day's count. Only ever moves forward; returns True on a reset."""
        if self.today is not None and today <= self.today:
            return False
        if self.today is not None:
            log.info(f"Day changed from {self.today} to {today}. Resetting call count (was {self.todays_calls}).")
        self.today = today
        self.todays_calls = 0
        return True

    def record_login(self, user: str, logged_on: Optional[datetime.date]) -> bool:
        """Counts a login line dated `logged_on`. Returns True if the count changed."""
        if logged_on is None:
            return False
        self.roll_over(logged_on)
        if logged_on != self.today or user in self.excluded_users:
            return False
        self.todays_calls += 1
        return True

    def record_logoff(self, user: str):
        self.last_logged_off_user = user


@dataclass(frozen=True)
class NodeRow:
    node: int
    status: SessionStatus

    @property
    def idle(self) -> bool:
        return self.status == IDLE_STATUS


@dataclass(frozen=True)
class Snapshot:
    rows: Tuple[NodeRow, ...]
    last_logged_off_user: str
    todays_calls: int
    full: bool = False

    def to_payload(self, payload_type: str = "nodes_update") -> dict:
        return {"type": payload_type,
                "full": self.full,
                "nodes": [{"node": r.node, "user": r.status.user, "location": r.status.location,
                           "idle": r.idle} for r in self.rows],
                "last_user": self.last_logged_off_user,
                "todays_calls": self.todays_calls}


class MonitorState:
    """
    Everything the ingestion and redraw tasks share, behind one lock.

    Callers must hold `lock` around `apply`, `check_day` and `drain`.
    """

    def __init__(self, max_nodes: int, excluded_users: Iterable[str] = (),
                 clock: Callable[[], datetime.date] = datetime.date.today):
        self.max_nodes = max_nodes
        self.clock = clock
        self.lock = asyncio.Lock()
        self.stats = CallStats(excluded_users=frozenset(excluded_users))
        self.sessions = SessionStateStore(on_logoff=self.stats.record_logoff)
        self.dirty_nodes: Set[int] = set()
        self.stats_dirty = False
        self.full_redraw = False
        self.events_applied = 0

    def seed(self, todays_calls: int, last_logged_off_user: Optional[str], today: Optional[datetime.date] = None):
        self.stats.seed(today or self.clock(), todays_calls, last_logged_off_user)
        self.mark_all_dirty()

    def apply(self, event: Event, logged_on: Optional[datetime.date] = None) -> int:
        node = self.sessions.apply(event)
        if isinstance(event, Login) and self.stats.record_login(event.user, logged_on):
            self.stats_dirty = True
        elif isinstance(event, Disconnect):
            self.stats_dirty = True
        if not 1 <= node <= self.max_nodes:
            log.debug(f"Event for node {node} is outside 1..{self.max_nodes}; tracked but not displayed.")
        self.dirty_nodes.add(node)
        self.events_applied += 1
        return node

    def check_day(self) -> bool:
        if self.stats.roll_over(self.clock()):
            self.stats_dirty = True
            return True
        return False

    def mark_all_dirty(self):
        self.dirty_nodes.update(range(1, self.max_nodes + 1))
        self.stats_dirty = True
        self.full_redraw = True

    def table(self) -> Tuple[NodeRow, ...]:
        return tuple(NodeRow(n, self.sessions.status(n)) for n in range(1, self.max_nodes + 1))

    def current_snapshot(self) -> Snapshot:
        """Full table without touching the dirty set, for late joiners."""
        return Snapshot(self.table(), self.stats.last_logged_off_user, self.stats.todays_calls, full=True)

    def drain(self) -> Optional[Snapshot]:
        """Returns one snapshot of everything changed since the last drain, or None."""
        if not self.dirty_nodes and not self.stats_dirty:
            return None
        rows = tuple(NodeRow(n, self.sessions.status(n))
                     for n in sorted(self.dirty_nodes) if 1 <= n <= self.max_nodes)
        snapshot = Snapshot(rows, self.stats.last_logged_off_user, self.stats.todays_calls, full=self.full_redraw)
        self.dirty_nodes.clear()
        self.stats_dirty = False
        self.full_redraw = False
        return snapshot
