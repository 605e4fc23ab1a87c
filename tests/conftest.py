"""
Shared fixtures for Talisman Node Monitor tests.
"""

import datetime

import pytest


TODAY = datetime.date(2024, 3, 15)
YESTERDAY = TODAY - datetime.timedelta(days=1)


def log_line(day: datetime.date, message: str, time_of_day: str = "12:00:00") -> str:
    """Builds a Talisman log line the way the BBS writes them."""
    return f"{day.isoformat()} {time_of_day} INFO: {message}\n"


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def make_line():
    return log_line


@pytest.fixture
def sample_log_lines():
    """A short but complete day: one member session, a new user, an in-progress session."""
    return [
        log_line(YESTERDAY, "Connection From: 10.0.0.9 on Node 1", "23:50:00"),
        log_line(YESTERDAY, "carol logged in on node 1", "23:50:05"),
        log_line(YESTERDAY, "Node 1 logged off", "23:59:00"),
        log_line(TODAY, "Connection From: 10.0.0.1 on Node 1", "08:00:00"),
        log_line(TODAY, "alice logged in on node 1", "08:00:10"),
        log_line(TODAY, "alice loading menu menus/main.toml on node 1", "08:00:11"),
        log_line(TODAY, "alice running door lord on node 1", "08:05:00"),
        log_line(TODAY, "Node 1 logged off", "08:30:00"),
        log_line(TODAY, "Connection From: 10.0.0.2 on Node 2", "09:00:00"),
        log_line(TODAY, "New user signing up on node 2", "09:00:05"),
        log_line(TODAY, "Node 2 logged off", "09:10:00"),
        log_line(TODAY, "Connection From: 10.0.0.3 on Node 3", "10:00:00"),
        log_line(TODAY, "bob logged in on node 3", "10:00:10"),
        log_line(TODAY, "Sysop checked mail", "10:01:00"),
    ]


@pytest.fixture
def write_talisman_install(tmp_path):
    """Returns a function that lays out a Talisman install with a custom talisman.ini."""

    def _write(ini_text: str, log_lines=()):
        (tmp_path / "talisman.ini").write_text(ini_text)
        log_dir = tmp_path / "logs"
        log_dir.mkdir(exist_ok=True)
        (log_dir / "talisman.log").write_text("".join(log_lines))
        return tmp_path

    return _write


@pytest.fixture
def talisman_dir(write_talisman_install, sample_log_lines):
    """A Talisman install with four nodes and the sample log."""
    ini = (
        "[main]\n"
        "system name = Test BBS\n"
        "max nodes = 4\n"
        "\n"
        "[paths]\n"
        "log path = logs\n"
    )
    return write_talisman_install(ini, sample_log_lines)


@pytest.fixture
def monitor_config(talisman_dir):
    from talisman_monitor.config import load_talisman_config

    return load_talisman_config(str(talisman_dir), excluded_users=["sysop"], redraw_interval_ms=50)
