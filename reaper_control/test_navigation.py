"""
Tests for end-of-region auto-advance and setlist navigation.

REGIONS: Intro 0-10, Song A 10-20, Song B 20-30, Outro 30-40.
"""

import threading
import time
from unittest import mock

import pytest

from reaper_control.models import Marker

from .conftest import FakeReaperAdapter, Rig, SONGS

PLAYING, STOPPED = 1, 0


def select(rig, region_ids):
    setlist = rig.setlist("Show", region_ids)
    rig.setlists.set_selected_setlist(setlist.id)
    return setlist


def rig_with_markers(tmp_path, *markers):
    return Rig(FakeReaperAdapter(SONGS, list(markers)), tmp_path)


# === End-of-region polling ===

def test_advances_near_region_end(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 19.7)

    assert rig.navigator.check_end_of_region()
    assert adapter.seeks() == [pytest.approx(20.001)]
    assert adapter.actions()[-2:] == ['1008', '1007']
    assert rig.regions.get_playback_state().current_region_id == 3
    assert not rig.navigator.is_transitioning


def test_no_advance_mid_region(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 15.0)

    assert not rig.navigator.check_end_of_region()
    assert adapter.seeks() == []


def test_advance_follows_setlist_order(rig, adapter):
    select(rig, [2, 4, 1])
    rig.transport(PLAYING, 19.9)

    assert rig.navigator.check_end_of_region()
    assert adapter.seeks() == [pytest.approx(30.001)]


def test_length_marker_moves_the_end(tmp_path):
    rig = rig_with_markers(tmp_path, Marker(1, '!length:5', 10.5))
    select(rig, [2, 3])

    rig.transport(PLAYING, 14.0)
    assert not rig.navigator.check_end_of_region()

    # Just past the shortened end
    rig.transport(PLAYING, 15.05)
    assert rig.navigator.check_end_of_region()
    assert rig.adapter.seeks() == [pytest.approx(20.001)]


def test_hard_stop_marker_blocks_polling_advance(tmp_path):
    rig = rig_with_markers(tmp_path, Marker(1, '!1008', 19.9))
    select(rig, [2, 3])
    rig.transport(PLAYING, 19.7)

    assert not rig.navigator.check_end_of_region()
    assert rig.adapter.seeks() == []


def test_last_item_stays_put(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 29.8)

    assert not rig.navigator.check_end_of_region()
    assert adapter.seeks() == []


def test_region_outside_setlist_does_not_advance(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 39.8)

    assert not rig.navigator.check_end_of_region()
    assert adapter.seeks() == []


def test_bpm_marker_applies_to_next_region(tmp_path):
    rig = rig_with_markers(tmp_path, Marker(1, '!bpm:90', 20.5))
    select(rig, [2, 3])
    rig.transport(PLAYING, 19.7)

    assert rig.navigator.check_end_of_region()
    assert rig.client.bpm_calculator.initial_bpm == 90.0


def test_autoplay_off_cues_next_item_stopped(rig, adapter):
    select(rig, [2, 3])
    rig.regions.set_autoplay(False)
    rig.transport(PLAYING, 19.7)

    assert rig.navigator.check_end_of_region()
    assert adapter.seeks() == [pytest.approx(20.001)]
    assert adapter.actions()[-1] == '1008'


# === Re-entrancy ===

def test_transition_in_flight_blocks_checks(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 19.7)

    assert rig.navigator._begin_transition()
    assert not rig.navigator.check_end_of_region()
    rig.navigator._end_transition()
    assert rig.navigator.check_end_of_region()
    assert len(adapter.seeks()) == 1


def test_seek_in_flight_blocks_auto_advance(rig, adapter):
    select(rig, [2, 3])
    rig.transport(PLAYING, 19.7)

    rig.navigator._seeking = True
    assert not rig.navigator.check_end_of_region()
    rig.navigator._seeking = False


def test_auto_advance_waits_out_manual_seek(rig, adapter):
    select(rig, [2, 3, 4])
    rig.transport(PLAYING, 19.7)

    entered, release = threading.Event(), threading.Event()
    send = adapter.send

    def slow_send(command):
        if command.startswith("SET/POS/"):
            entered.set()
            release.wait(2.0)
        return send(command)

    adapter.send = slow_send
    worker = threading.Thread(target=rig.navigator.navigate_to_next)
    worker.start()
    assert entered.wait(2.0)

    # Manual seek holds the REAPER command sequence
    assert not rig.navigator.check_end_of_region()
    release.set()
    worker.join()

    assert adapter.seeks() == [pytest.approx(20.001)]


# === Count-in ===

def test_count_in_cue_waits_for_region_start(rig, adapter):
    select(rig, [2, 3, 4])
    rig.regions.set_count_in(True)

    assert rig.navigator.seek_to_region(3)
    # Two bars of 4/4 at 120bpm before Song B
    assert adapter.seeks() == [pytest.approx(16.0)]

    # Pre-roll runs through the end of Song A
    rig.transport(PLAYING, 19.8)
    assert not rig.navigator.check_end_of_region()

    rig.transport(PLAYING, 29.8)
    assert rig.navigator.check_end_of_region()
    assert adapter.seeks()[-1] == pytest.approx(30.001)


def test_count_in_is_clamped_at_project_start(rig, adapter):
    rig.regions.set_count_in(True)
    assert rig.navigator.seek_to_region(2)
    assert adapter.seeks() == [pytest.approx(6.0)]

    adapter.commands.clear()
    assert rig.navigator.seek_to_region(1)
    assert adapter.seeks() == [0.0]


def test_count_in_play_enables_reaper_count_in(rig, adapter):
    rig.regions.set_count_in(True)
    rig.transport(PLAYING, 5.0)

    assert rig.navigator.seek_to_region(3)
    assert adapter.actions()[-3:] == ['1008', '40363', '1007']


# === Stopped at region end ===

def test_stopped_at_region_end_advances(rig, adapter):
    select(rig, [2, 3])
    rig.transport(STOPPED, 19.98)

    assert adapter.seeks() == [pytest.approx(20.001)]
    assert adapter.actions()[-1] == '1007'


def test_stopped_at_region_end_without_autoplay(rig, adapter):
    select(rig, [2, 3])
    rig.regions.set_autoplay(False)
    rig.transport(STOPPED, 19.98)

    assert adapter.seeks() == [pytest.approx(20.001)]
    assert '1007' not in adapter.actions()


def test_stopped_mid_region_does_nothing(rig, adapter):
    select(rig, [2, 3])
    rig.transport(STOPPED, 15.0)
    assert adapter.seeks() == []


def test_stopped_outside_regions_starts_setlist(adapter, tmp_path):
    adapter.regions = [SONGS[1], SONGS[3]]
    rig = Rig(adapter, tmp_path)
    select(rig, [2, 4])

    rig.transport(STOPPED, 25.0)
    assert adapter.seeks() == [pytest.approx(10.001)]


def test_hard_stop_waits_for_manual_resume(tmp_path):
    rig = rig_with_markers(tmp_path, Marker(1, '!1008', 19.9))
    select(rig, [2, 3])
    rig.transport(STOPPED, 19.98)

    assert rig.adapter.seeks() == []
    assert rig.navigator.navigate_to_next()
    assert rig.adapter.seeks() == [pytest.approx(20.001)]


def test_setting_changes_never_advance(rig, adapter):
    rig.transport(STOPPED, 19.98)
    select(rig, [2, 3])
    rig.regions.toggle_autoplay()
    rig.regions.toggle_autoplay()
    assert adapter.seeks() == []


# === Manual navigation ===

def test_navigate_regions_without_setlist(rig, adapter):
    assert rig.navigator.navigate_to_next()
    assert rig.navigator.navigate_to_next()
    assert rig.navigator.navigate_to_previous()
    assert adapter.seeks() == [pytest.approx(0.001), pytest.approx(10.001), pytest.approx(0.001)]
    assert not rig.navigator.navigate_to_previous()


def test_navigate_previous_from_nowhere_goes_to_last_region(rig, adapter):
    assert rig.navigator.navigate_to_previous()
    assert adapter.seeks() == [pytest.approx(30.001)]


def test_navigate_setlist_items(rig, adapter):
    select(rig, [3, 1])
    rig.transport(STOPPED, 25.0)

    assert rig.navigator.navigate_to_next()
    assert adapter.seeks() == [pytest.approx(0.001)]
    assert rig.navigator.navigate_to_previous()
    assert adapter.seeks()[-1] == pytest.approx(20.001)


def test_manual_navigation_resumes_only_when_playing(rig, adapter):
    rig.transport(STOPPED, 5.0)
    rig.navigator.navigate_to_next()
    assert adapter.actions() == []

    rig.transport(PLAYING, 12.0)
    rig.navigator.navigate_to_next()
    assert adapter.actions() == ['1008', '1007']


def test_seek_to_current_region_start(rig, adapter):
    assert not rig.navigator.seek_to_current_region_start()
    rig.transport(PLAYING, 27.0)
    assert rig.navigator.seek_to_current_region_start()
    assert adapter.seeks() == [pytest.approx(20.001)]


def test_seek_to_unknown_region(rig):
    assert not rig.navigator.seek_to_region(42)


def test_select_setlist_cues_first_item_paused(rig, adapter):
    setlist = rig.setlist("Show", [3, 2])
    rig.transport(PLAYING, 5.0)

    assert rig.navigator.select_setlist(setlist.id)
    assert rig.regions.get_playback_state().selected_setlist_id == setlist.id
    assert adapter.seeks() == [pytest.approx(20.001)]
    assert adapter.actions()[-1] == '1008'
    assert not rig.navigator.select_setlist("setlist-missing")


def test_seek_to_position_resumes(rig, adapter):
    rig.transport(PLAYING, 5.0)
    assert rig.navigator.seek_to_position(12.5)
    assert adapter.seeks() == [12.5]
    assert adapter.actions() == ['1008', '1007']
    assert rig.regions.get_playback_state().current_region_id == 2


def test_toggle_play_starts_setlist(rig, adapter):
    select(rig, [3, 4])
    assert rig.navigator.handle_toggle_play()
    assert adapter.seeks() == [pytest.approx(20.001)]
    assert adapter.actions() == ['1007']


def test_toggle_play_honours_record_arm(rig, adapter):
    rig.regions.set_recording_armed(True)
    assert rig.navigator.handle_toggle_play()
    assert adapter.actions() == ['40046']


def test_toggle_play_stops_recording(rig, adapter):
    rig.transport(5, 3.0)
    assert rig.regions.get_playback_state().is_recording
    assert rig.navigator.handle_toggle_play()
    assert adapter.actions() == ['40667']


def test_pause_only_when_playing(rig, adapter):
    assert not rig.navigator.pause()
    rig.transport(PLAYING, 3.0)
    assert rig.navigator.pause()
    assert adapter.actions() == ['1008']


def test_offline_seek_fails_cleanly(rig, adapter):
    adapter.offline = True
    assert not rig.navigator.seek_to_region(2)
    assert not rig.navigator.is_transitioning


# === Stale count-in cue ===

def test_cursor_moved_before_cue_releases_it(rig, adapter):
    select(rig, [2, 3])
    rig.regions.set_count_in(True)
    assert rig.navigator.seek_to_region(3)
    assert adapter.seeks() == [pytest.approx(16.0)]

    # Performer drags the cursor back inside REAPER and plays Song A through
    rig.transport(PLAYING, 11.0)
    rig.transport(PLAYING, 19.7)

    assert rig.navigator.check_end_of_region()
    assert adapter.seeks()[-1] == pytest.approx(20.001)


# === Polling loop ===

def wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def polled(adapter, tmp_path):
    rig = Rig(adapter, tmp_path, poll_interval=0.01)
    yield rig
    rig.navigator.stop_polling()


def test_polling_advances_near_region_end(polled, adapter):
    select(polled, [2, 3])
    polled.transport(PLAYING, 19.7)
    polled.navigator.start_polling()

    assert wait_for(lambda: adapter.seeks())
    polled.navigator.stop_polling()
    assert adapter.seeks() == [pytest.approx(20.001)]
    assert polled.regions.get_playback_state().current_region_id == 3


def test_polling_idle_while_stopped(polled, adapter):
    select(polled, [2, 3])
    polled.transport(STOPPED, 19.7)

    with mock.patch.object(polled.navigator, 'check_end_of_region') as check:
        polled.navigator.start_polling()
        time.sleep(0.1)
        polled.navigator.stop_polling()

    check.assert_not_called()
    assert adapter.seeks() == []


def test_polling_idle_without_setlist(polled, adapter):
    polled.transport(PLAYING, 19.7)

    with mock.patch.object(polled.navigator, 'check_end_of_region') as check:
        polled.navigator.start_polling()
        time.sleep(0.1)
        polled.navigator.stop_polling()

    check.assert_not_called()
    assert adapter.seeks() == []


def test_restart_delay_holds_off_checks(adapter, tmp_path):
    rig = Rig(adapter, tmp_path, poll_interval=0.01, restart_delay=5.0)
    select(rig, [2, 3])
    rig.navigator.restart_polling()

    # Stopped at the region end inside the window: no advance
    rig.transport(STOPPED, 19.98)
    assert adapter.seeks() == []

    rig.transport(PLAYING, 19.7)
    with mock.patch.object(rig.navigator, 'check_end_of_region') as check:
        rig.navigator.start_polling()
        time.sleep(0.1)
        rig.navigator.stop_polling()
    check.assert_not_called()

    # Window over
    rig.navigator.config.restart_delay = 0
    rig.navigator.restart_polling()
    rig.transport(STOPPED, 19.98)
    assert adapter.seeks() == [pytest.approx(20.001)]
