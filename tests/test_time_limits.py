import json
from datetime import timezone

import pytest

from harness import Harness, MockScreenTimeLimitSettings, time_str_to_secs
from wellbeing_tracker.history import HISTORY_THRESHOLD_SECONDS, UserState
from wellbeing_tracker.time_limits import TimeLimitsManager, TimeLimitsState


def _entry(old_state, new_state, wall_time_secs):
    return {"oldState": int(old_state), "newState": int(new_state), "wallTimeSecs": wall_time_secs}


def _history(*entries):
    return json.dumps([_entry(*e) for e in entries])


def _manager(harness, settings):
    return TimeLimitsManager(harness.history_file, harness.clock, harness.login_user_factory, settings,
                             timezone=timezone.utc)


def test_can_be_disabled_via_settings(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings(enabled=False))

    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.DISABLED)
    harness.expect_state("2024-06-01T15:00:00Z", manager, TimeLimitsState.DISABLED)
    harness.add_login_user_state_change_event("2024-06-01T15:00:10Z", "active", False)
    harness.add_login_user_state_change_event("2024-06-01T15:00:20Z", "lingering", True)
    harness.expect_properties("2024-06-01T15:00:30Z", manager,
                              state=TimeLimitsState.DISABLED, daily_limit_time=0)
    harness.shutdown_manager("2024-06-01T15:10:00Z", manager)

    harness.run()

    # Nothing was tracked, so nothing is written.
    assert not harness.history_path.exists()


def test_tracks_a_single_days_usage(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T13:59:59Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))
    harness.expect_state("2024-06-01T14:00:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T14:10:00Z", manager)

    harness.run()

    assert harness.read_history() == [
        _entry(UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T10:00:00Z")),
        _entry(UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T14:10:00Z")),
    ]


def test_resets_usage_at_the_end_of_the_day(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T15:00:00Z", manager,
                              state=TimeLimitsState.LIMIT_REACHED,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))
    harness.add_login_user_state_change_event("2024-06-01T15:00:10Z", "offline", True)

    # The next day (after 03:00 in the morning) usage should be reset.
    harness.expect_properties("2024-06-02T13:59:59Z", manager,
                              state=TimeLimitsState.ACTIVE, daily_limit_time=0)
    harness.add_login_user_state_change_event("2024-06-02T14:00:00Z", "active", False)
    harness.expect_properties("2024-06-02T14:00:00Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-02T18:00:00Z"))

    # And that limit should be reached eventually.
    harness.expect_properties("2024-06-02T18:00:01Z", manager,
                              state=TimeLimitsState.LIMIT_REACHED,
                              daily_limit_time=time_str_to_secs("2024-06-02T18:00:00Z"))
    harness.shutdown_manager("2024-06-02T18:10:00Z", manager)

    harness.run()


def test_usage_before_3am_counts_towards_the_previous_day(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T22:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_properties("2024-06-02T01:59:59Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-02T02:00:00Z"))
    harness.expect_properties("2024-06-02T02:30:00Z", manager,
                              state=TimeLimitsState.LIMIT_REACHED,
                              daily_limit_time=time_str_to_secs("2024-06-02T02:00:00Z"))

    # Still active at 03:00, so the new day's usage starts counting straight away.
    harness.expect_properties("2024-06-02T03:00:01Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-02T07:00:00Z"))
    harness.shutdown_manager("2024-06-02T03:10:00Z", manager)

    harness.run()


def test_tracks_usage_correctly_from_an_existing_history_file(tmp_path):
    harness = Harness(tmp_path, _history(
        (UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T07:30:00Z")),
        (UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T08:00:00Z")),
        (UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T08:30:00Z")),
        (UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T09:30:00Z")),
    ))
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    # Two active periods this morning, 07:30–08:00 and 08:30–09:30, so 2.5h
    # are left today.
    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T12:29:59Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T12:30:00Z"))
    harness.expect_state("2024-06-01T12:30:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T12:40:00Z", manager)

    harness.run()


def test_immediately_limits_usage_from_an_existing_history_file(tmp_path):
    harness = Harness(tmp_path, _history(
        (UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T04:30:00Z")),
        (UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T08:50:00Z")),
    ))
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    # One active period, 04:30–08:50, so the limit was hit at 08:30.
    harness.expect_properties("2024-06-01T10:00:01Z", manager,
                              state=TimeLimitsState.LIMIT_REACHED,
                              daily_limit_time=time_str_to_secs("2024-06-01T08:30:00Z"))
    harness.shutdown_manager("2024-06-01T10:10:00Z", manager)

    harness.run()


@pytest.mark.parametrize("contents", [
    "",
    "not valid JSON",
    "[]",
    "[{}]",
    '[{"newState": 1, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": 1}]',
    '[{"oldState": "not a number", "newState": 1, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": "not a number", "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": 1, "wallTimeSecs": "not a number"}]',
    '[{"oldState": 666, "newState": 1, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": 666, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": 0, "wallTimeSecs": 123}]',
    '[{"oldState": 0, "newState": 1, "wallTimeSecs": 123},{"oldState": 1, "newState": 0, "wallTimeSecs": 1}]',
    pytest.param('[{"oldState": 0, "newState": 1, "wallTimeSecs": 1' + '0' * 400 + '}]', id="huge-timestamp"),
    pytest.param("[" * 100000 + "]" * 100000, id="deeply-nested"),
])
def test_ignores_invalid_history_file_syntax(tmp_path, contents):
    harness = Harness(tmp_path, contents)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_properties("2024-06-01T10:00:01Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))
    harness.shutdown_manager("2024-06-01T10:10:00Z", manager)

    harness.run()


def test_expires_old_entries_from_an_existing_history_file(tmp_path):
    harness = Harness(tmp_path, _history(
        # Old entries
        (UserState.INACTIVE, UserState.ACTIVE,
         time_str_to_secs("2024-06-01T07:30:00Z") - 2 * HISTORY_THRESHOLD_SECONDS),
        (UserState.ACTIVE, UserState.INACTIVE,
         time_str_to_secs("2024-06-01T08:00:00Z") - 2 * HISTORY_THRESHOLD_SECONDS),
        # Recent entries
        (UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T08:30:00Z")),
        (UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T09:30:00Z")),
    ))
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T12:29:59Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T13:00:00Z"))
    harness.shutdown_manager("2024-06-01T12:40:00Z", manager)

    harness.run()

    assert harness.read_history() == [
        # Recent entries
        _entry(UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T08:30:00Z")),
        _entry(UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T09:30:00Z")),
        # New entries
        _entry(UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T10:00:00Z")),
        _entry(UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T12:40:00Z")),
    ]


def test_expires_future_entries_from_an_existing_history_file(tmp_path):
    harness = Harness(tmp_path, _history(
        (UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("3000-06-01T04:30:00Z")),
        (UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("3000-06-01T08:50:00Z")),
    ))
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    # Usage in the year 3000 can only come from the clock offset changing
    # while nothing was running. It is ignored completely.
    harness.expect_properties("2024-06-01T10:00:01Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))
    harness.shutdown_manager("2024-06-01T10:10:00Z", manager)

    harness.run()

    assert harness.read_history() == [
        _entry(UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T10:00:00Z")),
        _entry(UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T10:10:00Z")),
    ]


def test_doesnt_count_usage_across_time_change_events_forwards(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    # Use up 2h of the daily limit.
    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T12:00:00Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))

    def after_time_change():
        # In the new epoch, 2h of the limit are left.
        harness.expect_properties("2024-06-01T16:00:01Z", manager,
                                  state=TimeLimitsState.ACTIVE,
                                  daily_limit_time=time_str_to_secs("2024-06-01T17:59:59Z"))
        harness.expect_properties("2024-06-01T18:00:00Z", manager,
                                  state=TimeLimitsState.LIMIT_REACHED,
                                  daily_limit_time=time_str_to_secs("2024-06-01T17:59:59Z"))
        harness.shutdown_manager("2024-06-01T18:10:00Z", manager)

    harness.add_time_change_event("2024-06-01T12:00:01Z", "2024-06-01T16:00:00Z", after_time_change)

    harness.run()


def test_doesnt_count_usage_across_time_change_events_backwards(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_state("2024-06-01T10:00:01Z", manager, TimeLimitsState.ACTIVE)
    harness.expect_properties("2024-06-01T12:00:00Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))

    def after_time_change():
        harness.expect_properties("2024-06-01T09:00:01Z", manager,
                                  state=TimeLimitsState.ACTIVE,
                                  daily_limit_time=time_str_to_secs("2024-06-01T10:59:59Z"))
        harness.expect_properties("2024-06-01T11:00:00Z", manager,
                                  state=TimeLimitsState.LIMIT_REACHED,
                                  daily_limit_time=time_str_to_secs("2024-06-01T10:59:59Z"))
        harness.shutdown_manager("2024-06-01T11:10:00Z", manager)

    harness.add_time_change_event("2024-06-01T12:00:01Z", "2024-06-01T09:00:00Z", after_time_change)

    harness.run()


def test_only_active_and_not_idle_counts_as_usage(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.add_login_user_state_change_event("2024-06-01T11:00:00Z", "online", False)
    harness.expect_properties("2024-06-01T11:00:01Z", manager,
                              state=TimeLimitsState.ACTIVE, user_state=UserState.INACTIVE,
                              daily_limit_time=0)
    harness.add_login_user_state_change_event("2024-06-01T12:00:00Z", "active", True)
    harness.expect_properties("2024-06-01T12:00:01Z", manager,
                              user_state=UserState.INACTIVE, daily_limit_time=0)
    harness.add_login_user_state_change_event("2024-06-01T12:30:00Z", "active", False)

    # 1h used before going inactive at 11:00.
    harness.expect_properties("2024-06-01T12:30:00Z", manager,
                              state=TimeLimitsState.ACTIVE, user_state=UserState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T15:30:00Z"))
    harness.expect_state("2024-06-01T15:30:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T15:40:00Z", manager)

    harness.run()

    assert [e["wallTimeSecs"] for e in harness.read_history()] == [
        time_str_to_secs("2024-06-01T10:00:00Z"),
        time_str_to_secs("2024-06-01T11:00:00Z"),
        time_str_to_secs("2024-06-01T12:30:00Z"),
        time_str_to_secs("2024-06-01T15:40:00Z"),
    ]


def test_inactive_user_is_not_timed(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.add_login_user_state_change_event("2024-06-01T11:00:00Z", "offline", True)

    def check_no_timer():
        assert harness.pending_timeouts() == []

    harness.add_assertion_event("2024-06-01T11:00:01Z", check_no_timer)
    harness.shutdown_manager("2024-06-01T23:00:00Z", manager)

    harness.run()


def test_raising_the_limit_leaves_limit_reached(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    settings = MockScreenTimeLimitSettings()
    manager = _manager(harness, settings)

    harness.expect_state("2024-06-01T14:00:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.add_assertion_event("2024-06-01T14:30:00Z",
                                lambda: settings.set("daily-limit-seconds", 6 * 60 * 60))
    harness.expect_properties("2024-06-01T14:30:00Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T16:00:00Z"))
    harness.expect_state("2024-06-01T16:00:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T16:10:00Z", manager)

    harness.run()


def test_disabling_and_reenabling_keeps_todays_usage(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    settings = MockScreenTimeLimitSettings()
    manager = _manager(harness, settings)

    harness.add_assertion_event("2024-06-01T12:00:00Z", lambda: settings.set("enabled", False))
    harness.expect_properties("2024-06-01T12:00:00Z", manager,
                              state=TimeLimitsState.DISABLED, daily_limit_time=0)

    def check_history_written():
        assert harness.read_history() == [
            _entry(UserState.INACTIVE, UserState.ACTIVE, time_str_to_secs("2024-06-01T10:00:00Z")),
            _entry(UserState.ACTIVE, UserState.INACTIVE, time_str_to_secs("2024-06-01T12:00:00Z")),
        ]
        assert harness.pending_timeouts() == []
        assert harness.time_change_notify is None

    harness.add_assertion_event("2024-06-01T12:00:01Z", check_history_written)

    # 2h were used before disabling; the time in between doesn't count.
    harness.add_assertion_event("2024-06-01T13:00:00Z", lambda: settings.set("enabled", True))
    harness.expect_properties("2024-06-01T13:00:00Z", manager,
                              state=TimeLimitsState.ACTIVE,
                              daily_limit_time=time_str_to_secs("2024-06-01T15:00:00Z"))
    harness.shutdown_manager("2024-06-01T13:10:00Z", manager)

    harness.run()


def test_daily_limit_reached_is_emitted_on_each_entry(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())
    reached = []
    manager.connect("daily-limit-reached", lambda m: reached.append(harness.current_time_secs))

    harness.add_login_user_state_change_event("2024-06-01T15:00:00Z", "active", False)
    harness.add_login_user_state_change_event("2024-06-02T09:00:00Z", "active", False)
    harness.shutdown_manager("2024-06-02T14:00:00Z", manager)

    harness.run()

    assert reached == [
        time_str_to_secs("2024-06-01T14:00:00Z"),
        time_str_to_secs("2024-06-02T07:00:00Z"),
    ]


def test_notifies_once_per_change(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    settings = MockScreenTimeLimitSettings(enabled=False)
    manager = _manager(harness, settings)
    notified = []
    for name in ("state", "daily-limit-time", "grayscale-enabled"):
        manager.connect(f"notify::{name}", lambda m, name=name: notified.append(name))

    settings.set("enabled", True)
    assert notified == ["state", "daily-limit-time"]

    notified.clear()
    settings.set("grayscale", False)
    assert notified == ["grayscale-enabled"]
    assert manager.grayscale_enabled is False

    notified.clear()
    settings.set("daily-limit-seconds", 60 * 60)
    assert notified == ["daily-limit-time"]

    harness.shutdown_manager("2024-06-01T10:00:00Z", manager)
    harness.run()


def test_shutdown_disconnects_settings(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    settings = MockScreenTimeLimitSettings()
    manager = _manager(harness, settings)

    manager.shutdown()

    assert not settings.connected
    assert harness.login_user.properties_changed_callback is None
    assert manager.state == TimeLimitsState.DISABLED

    # A second shutdown doesn't touch the history again.
    harness.history_path.unlink()
    manager.shutdown()
    assert not harness.history_path.exists()


def test_runs_without_login_user(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")

    def broken_factory():
        raise OSError("no system bus")

    manager = TimeLimitsManager(harness.history_file, harness.clock, broken_factory,
                                MockScreenTimeLimitSettings(), timezone=timezone.utc)

    harness.expect_properties("2024-06-01T10:00:01Z", manager,
                              state=TimeLimitsState.ACTIVE, user_state=UserState.ACTIVE)
    harness.expect_state("2024-06-01T14:00:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T14:10:00Z", manager)

    harness.run()


def test_runs_without_time_change_support(tmp_path, monkeypatch):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")

    def unsupported(callback):
        raise NotImplementedError("no timerfd")

    monkeypatch.setattr(harness.clock, "time_change_notify", unsupported)
    manager = _manager(harness, MockScreenTimeLimitSettings())

    harness.expect_state("2024-06-01T14:00:01Z", manager, TimeLimitsState.LIMIT_REACHED)
    harness.shutdown_manager("2024-06-01T14:10:00Z", manager)

    harness.run()


def test_unchanged_clock_offset_is_ignored(tmp_path):
    harness = Harness(tmp_path)
    harness.initialize_mock_clock("2024-06-01T10:00:00Z")
    manager = _manager(harness, MockScreenTimeLimitSettings())

    # A spurious notification without any change to the clock.
    harness.add_assertion_event("2024-06-01T11:00:00Z", lambda: harness.time_change_notify())
    harness.expect_properties("2024-06-01T11:00:01Z", manager,
                              daily_limit_time=time_str_to_secs("2024-06-01T14:00:00Z"))
    harness.shutdown_manager("2024-06-01T11:10:00Z", manager)

    harness.run()

    assert harness.read_history()[0]["wallTimeSecs"] == time_str_to_secs("2024-06-01T10:00:00Z")
