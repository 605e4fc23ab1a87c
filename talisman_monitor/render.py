import abc
import asyncio
import contextlib
import logging
import os
import sys
from typing import Dict, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from .config import MonitorConfig, NODE_COL_WIDTH, USER_COL_WIDTH, LOCATION_COL_WIDTH, NO_LAST_USER
from .state import IDLE_STATUS, SessionStatus, Snapshot

log = logging.getLogger("TalismanMonitor.Render")

# Text colors
STYLE_NODE = "bold white"
STYLE_LABEL = "cyan"
STYLE_USER = "bold cyan"
STYLE_USER_IDLE = "green"
STYLE_LOCATION = "bold cyan"
STYLE_LAST_USER_LABEL = "yellow"
STYLE_LAST_USER = "bold yellow"
STYLE_FOOTER = "red on bright_white"

QUIT_KEYS = b"qQ\x1b\x03"  # q, Q, Esc, Ctrl-C


class RenderSink(abc.ABC):
    """Something that can show snapshots of the node table."""

    async def start(self):
        pass

    @abc.abstractmethod
    async def render(self, snapshot: Snapshot):
        ...

    async def close(self):
        pass


def trim_sauce(content: bytes) -> bytes:
    """Cuts the SAUCE metadata record (and the EOF marker before it) off an ANSI art file."""
    for marker in (b"COMNT", b"SAUCE00"):
        idx = content.find(marker)
        if idx != -1:
            return content[:max(idx - 1, 0)]
    return content


def load_header_art(path: str) -> Optional[Text]:
    """Loads CP437 ANSI art for the screen header. Missing art is not an error."""
    try:
        with open(path, 'rb') as f:
            content = f.read()
    except FileNotFoundError:
        log.info(f"No header art at '{path}', drawing the table without it.")
        return None
    except OSError as e:
        log.warning(f"Could not read header art '{path}': {e}")
        return None
    decoded = trim_sauce(content).decode('cp437').replace('\r\n', '\n')
    return Text.from_ansi(decoded)


class TerminalRenderSink(RenderSink):
    """
    Full-screen node table drawn with rich.

    Keeps its own copy of every displayed row; each snapshot only carries the
    rows that changed, so they are merged in before redrawing.
    """

    def __init__(self, config: MonitorConfig, console: Optional[Console] = None):
        self.config = config
        self.console = console or Console()
        self.rows: Dict[int, SessionStatus] = {n: IDLE_STATUS for n in range(1, config.max_nodes + 1)}
        self.last_user = NO_LAST_USER
        self.todays_calls = 0
        self.header_art: Optional[Text] = None
        self.live: Optional[Live] = None

    async def start(self):
        loop = asyncio.get_running_loop()
        self.header_art = await loop.run_in_executor(None, load_header_art, self.config.header_art_file)
        self.live = Live(self.build(), console=self.console, screen=True, auto_refresh=False)
        self.live.start()

    async def render(self, snapshot: Snapshot):
        for row in snapshot.rows:
            self.rows[row.node] = row.status
        self.last_user = snapshot.last_logged_off_user
        self.todays_calls = snapshot.todays_calls
        if self.live is not None:
            self.live.update(self.build(), refresh=True)

    async def close(self):
        if self.live is not None:
            self.live.stop()
            self.live = None

    def build_table(self) -> Table:
        table = Table(box=None, show_edge=False, pad_edge=False, header_style=STYLE_LABEL)
        table.add_column("Node", width=NODE_COL_WIDTH, no_wrap=True, overflow="crop")
        table.add_column("User", width=USER_COL_WIDTH, no_wrap=True, overflow="crop")
        table.add_column("Location", width=LOCATION_COL_WIDTH, no_wrap=True, overflow="crop")
        for node, status in sorted(self.rows.items()):
            user_style = STYLE_USER_IDLE if status == IDLE_STATUS else STYLE_USER
            table.add_row(Text(str(node), style=STYLE_NODE),
                          Text(status.user, style=user_style),
                          Text(status.location, style=STYLE_LOCATION))
        return table

    def build_summary(self) -> Text:
        excluded = ", ".join(sorted(self.config.excluded_users)) or "nobody"
        summary = Text()
        summary.append(" Last User: ", style=STYLE_LAST_USER_LABEL)
        summary.append(self.last_user, style=STYLE_LAST_USER)
        summary.append("\n Today's Calls: ", style=STYLE_LAST_USER_LABEL)
        summary.append(f"{self.todays_calls} (excluding {excluded})", style=STYLE_LAST_USER)
        return summary

    def build_footer(self) -> Text:
        width = self.console.width
        label = f" System Name: {self.config.system_name}"
        quit_hint = "Q/ESC to Quit "
        padding = max(width - len(label) - len(quit_hint), 1)
        return Text(label + " " * padding + quit_hint, style=STYLE_FOOTER)

    def build(self) -> Group:
        parts = []
        if self.header_art is not None:
            parts.append(self.header_art)
        parts.extend([self.build_table(), Text(""), self.build_summary(), self.build_footer()])
        return Group(*parts)


@contextlib.contextmanager
def watch_quit_keys(loop: asyncio.AbstractEventLoop, quit_event: asyncio.Event, stream=None):
    """
    Puts the terminal in non-canonical, no-echo mode and sets `quit_event` on q/Q/Esc.
    Yields False without touching anything when the stream is not a terminal.
    """
    stream = stream if stream is not None else sys.stdin
    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError):
        yield False
        return
    if not os.isatty(fd):
        yield False
        return

    import termios

    old_settings = termios.tcgetattr(fd)
    new = termios.tcgetattr(fd)
    new[3] &= ~(termios.ICANON | termios.ECHO)
    new[6][termios.VMIN] = 1
    new[6][termios.VTIME] = 0
    termios.tcsetattr(fd, termios.TCSADRAIN, new)

    def on_key():
        try:
            data = os.read(fd, 32)
        except OSError:
            return
        if any(ch in QUIT_KEYS for ch in data):
            log.info("Quit key pressed.")
            quit_event.set()

    loop.add_reader(fd, on_key)
    try:
        yield True
    finally:
        loop.remove_reader(fd)
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
