import datetime

import pytest

from talisman_monitor.events import Connect, Login, NewUserSignup, MenuChange, GenericActivity, Disconnect
from talisman_monitor.state import (
    CallStats,
    IDLE_STATUS,
    LOGGING_IN,
    MonitorState,
    SessionStateStore,
    SessionStatus,
    SIGNING_UP,
    format_location,
)

DAY = datetime.date(2024, 3, 15)


def make_monitor(max_nodes=4, excluded=(), day=DAY):
    clock = {"today": day}
    monitor = MonitorState(max_nodes, excluded, clock=lambda: clock["today"])
    monitor.seed(0, None)
    monitor.drain()
    return monitor, clock


# --- format_location ---

@pytest.mark.parametrize(
    "raw,expected",
    [
        ("menus/main.toml", "At Main"),
        ("menu file_areas.toml", "At File_areas"),
        ("menu menus/message_base.toml", "At Message_base"),
        ("lord", "At Lord"),
        ("the pit", "At The Pit"),
        ("LORD", "At LORD"),
        ("  menus/doors.toml  ", "At Doors"),
    ],
)
def test_format_location(raw, expected):
    assert format_location(raw) == expected


# --- SessionStateStore ---

def test_connect_shows_remote_address():
    store = SessionStateStore()
    assert store.apply(Connect(1, "10.0.0.1")) == 1
    assert store.sessions[1] == SessionStatus("Unknown User", "10.0.0.1")
    assert 1 not in store.active_users


def test_login_records_identity():
    store = SessionStateStore()
    store.apply(Login(2, "alice"))
    assert store.sessions[2] == SessionStatus("alice", LOGGING_IN)
    assert store.active_users[2] == "alice"


def test_new_user_signup_records_no_identity():
    store = SessionStateStore()
    store.apply(NewUserSignup(3))
    assert store.sessions[3] == SessionStatus("New User", SIGNING_UP)
    assert 3 not in store.active_users


def test_menu_and_activity_format_location_and_keep_identity():
    store = SessionStateStore()
    store.apply(Login(1, "alice"))
    store.apply(MenuChange(1, "alice", "menus/main.toml"))
    assert store.sessions[1] == SessionStatus("alice", "At Main")
    store.apply(GenericActivity(1, "alice", "running door", "lord"))
    assert store.sessions[1] == SessionStatus("alice", "At Lord")
    assert store.active_users[1] == "alice"


def test_full_session_ends_idle_with_last_user():
    logoffs = []
    store = SessionStateStore(on_logoff=logoffs.append)
    for event in (Connect(1, "1.2.3.4"), Login(1, "bob"), MenuChange(1, "bob", "menus/main.toml"), Disconnect(1)):
        store.apply(event)

    assert store.status(1) == IDLE_STATUS
    assert store.sessions == {}
    assert store.active_users == {}
    assert logoffs == ["bob"]


def test_new_user_disconnect_does_not_report_logoff():
    logoffs = []
    store = SessionStateStore(on_logoff=logoffs.append)
    store.apply(Connect(2, "1.2.3.4"))
    store.apply(NewUserSignup(2))
    store.apply(Disconnect(2))
    assert logoffs == []
    assert store.status(2) == IDLE_STATUS


def test_disconnect_of_idle_node_is_harmless():
    logoffs = []
    store = SessionStateStore(on_logoff=logoffs.append)
    assert store.apply(Disconnect(9)) == 9
    assert logoffs == []


def test_identity_keys_always_subset_of_sessions():
    store = SessionStateStore()
    events = [Connect(1, "a"), Login(1, "x"), NewUserSignup(2), Login(3, "y"), MenuChange(3, "y", "m"),
              Disconnect(1), GenericActivity(4, "z", "running door", "lord"), Disconnect(3), Disconnect(4)]
    for event in events:
        store.apply(event)
        assert set(store.active_users) <= set(store.sessions)
    assert set(store.sessions) == {2}


def test_unknown_event_type_raises():
    store = SessionStateStore()
    with pytest.raises(TypeError):
        store.apply(object())


# --- CallStats ---

def test_call_stats_counts_and_excludes():
    stats = CallStats(excluded_users=frozenset({"bob"}))
    stats.seed(DAY, 0, None)
    assert stats.record_login("alice", DAY) is True
    assert stats.record_login("bob", DAY) is False
    assert stats.record_login("alice", DAY) is True
    assert stats.todays_calls == 2
    assert stats.last_logged_off_user == "None"


def test_call_stats_ignores_undated_and_old_logins():
    stats = CallStats()
    stats.seed(DAY, 5, "carol")
    assert stats.record_login("alice", None) is False
    assert stats.record_login("alice", DAY - datetime.timedelta(days=1)) is False
    assert stats.todays_calls == 5
    assert stats.last_logged_off_user == "carol"


def test_call_stats_roll_over_is_forward_only():
    stats = CallStats()
    stats.seed(DAY, 3, None)
    assert stats.roll_over(DAY - datetime.timedelta(days=1)) is False
    assert stats.roll_over(DAY) is False
    assert stats.todays_calls == 3
    assert stats.roll_over(DAY + datetime.timedelta(days=1)) is True
    assert stats.todays_calls == 0


# --- MonitorState ---

def test_monitor_state_last_user_follows_logoffs():
    monitor, _ = make_monitor()
    for event in (Connect(1, "1.2.3.4"), Login(1, "bob"), MenuChange(1, "bob", "menus/main.toml"), Disconnect(1)):
        monitor.apply(event, DAY)

    snapshot = monitor.drain()
    assert snapshot.rows[0].node == 1
    assert snapshot.rows[0].idle
    assert snapshot.last_logged_off_user == "bob"
    assert snapshot.todays_calls == 1


def test_monitor_state_new_user_disconnect_keeps_last_user():
    monitor, _ = make_monitor()
    monitor.seed(0, "alice")
    for event in (Connect(2, "1.2.3.4"), NewUserSignup(2), Disconnect(2)):
        monitor.apply(event, DAY)
    assert monitor.drain().last_logged_off_user == "alice"


def test_monitor_state_excluded_users_are_not_counted():
    monitor, _ = make_monitor(excluded={"bob"})
    monitor.apply(Login(1, "alice"), DAY)
    monitor.apply(Login(2, "bob"), DAY)
    monitor.apply(Login(3, "alice"), DAY)
    assert monitor.stats.todays_calls == 2


def test_monitor_state_coalesces_changes_per_node():
    monitor, _ = make_monitor()
    monitor.apply(Login(3, "carol"), DAY)
    monitor.apply(MenuChange(3, "carol", "menus/doors.toml"), DAY)

    snapshot = monitor.drain()
    assert len(snapshot.rows) == 1
    assert snapshot.rows[0].node == 3
    assert snapshot.rows[0].status == SessionStatus("carol", "At Doors")


def test_monitor_state_drain_empty_returns_none():
    monitor, _ = make_monitor()
    assert monitor.drain() is None
    monitor.apply(Connect(1, "x"))
    assert monitor.drain() is not None
    assert monitor.drain() is None


def test_monitor_state_node_out_of_range_is_tracked_not_displayed():
    monitor, _ = make_monitor(max_nodes=4)
    assert monitor.apply(Connect(7, "1.2.3.4"), DAY) == 7

    assert monitor.sessions.status(7) == SessionStatus("Unknown User", "1.2.3.4")
    snapshot = monitor.drain()
    assert snapshot is not None
    assert snapshot.rows == ()
    assert all(row.node != 7 for row in monitor.table())


def test_monitor_state_midnight_splits_counts():
    monitor, clock = make_monitor()
    monitor.apply(Login(1, "alice"), DAY)
    monitor.apply(Login(2, "bob"), DAY)
    assert monitor.stats.todays_calls == 2

    next_day = DAY + datetime.timedelta(days=1)
    monitor.apply(Login(3, "carol"), next_day)
    assert monitor.stats.todays_calls == 1
    assert monitor.stats.today == next_day


def test_monitor_state_check_day_resets_on_clock():
    monitor, clock = make_monitor()
    monitor.apply(Login(1, "alice"), DAY)
    monitor.drain()

    assert monitor.check_day() is False
    clock["today"] = DAY + datetime.timedelta(days=1)
    assert monitor.check_day() is True

    snapshot = monitor.drain()
    assert snapshot.todays_calls == 0
    assert snapshot.rows == ()


def test_monitor_state_seed_marks_full_table_dirty():
    monitor = MonitorState(3, clock=lambda: DAY)
    monitor.seed(4, "dave")

    snapshot = monitor.drain()
    assert snapshot.full is True
    assert [row.node for row in snapshot.rows] == [1, 2, 3]
    assert all(row.idle for row in snapshot.rows)
    assert snapshot.todays_calls == 4
    assert snapshot.last_logged_off_user == "dave"


def test_current_snapshot_does_not_clear_dirty_nodes():
    monitor, _ = make_monitor(max_nodes=2)
    monitor.apply(Login(2, "erin"), DAY)

    full = monitor.current_snapshot()
    assert full.full is True
    assert [row.status.user for row in full.rows] == ["waiting for caller", "erin"]
    assert monitor.drain().rows[0].node == 2


def test_snapshot_payload():
    monitor, _ = make_monitor(max_nodes=2)
    monitor.apply(Login(1, "frank"), DAY)

    payload = monitor.drain().to_payload()
    assert payload == {
        "type": "nodes_update",
        "full": False,
        "nodes": [{"node": 1, "user": "frank", "location": LOGGING_IN, "idle": False}],
        "last_user": "None",
        "todays_calls": 1,
    }
