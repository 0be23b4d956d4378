"""Tests for region tracking and transport polling."""

from reaper_control.models import Region
from reaper_control.reaper import EXT_STATE_SECTION, PROJECT_ID_KEY


def test_regions_sorted_by_start(rig, adapter):
    adapter.regions = [Region(7, 'Late', 50.0, 60.0)] + adapter.regions
    rig.regions.fetch_regions()
    assert [r.id for r in rig.regions.get_regions()] == [1, 2, 3, 4, 7]


def test_setlist_order_when_selected(rig):
    setlist = rig.setlist("Show", [4, 2])
    rig.setlists.set_selected_setlist(setlist.id)
    assert [r.id for r in rig.regions.get_regions()] == [4, 2]
    assert len(rig.regions.get_all_regions()) == 4


def test_empty_setlist_falls_back_to_all_regions(rig):
    setlist = rig.setlists.create_setlist("Empty")
    rig.setlists.set_selected_setlist(setlist.id)
    assert [r.id for r in rig.regions.get_regions()] == [1, 2, 3, 4]


def test_next_and_previous_region(rig):
    assert rig.regions.get_next_region() is None

    rig.transport(0, 15.0)
    assert rig.regions.get_current_region().id == 2
    assert rig.regions.get_next_region().id == 3
    assert rig.regions.get_previous_region().id == 1

    rig.transport(0, 35.0)
    assert rig.regions.get_next_region() is None


def test_transport_callbacks_only_fire_on_polls(rig):
    playback, transport = [], []
    rig.regions.add_playback_callback(playback.append)
    rig.regions.add_transport_callback(transport.append)

    rig.regions.toggle_autoplay()
    rig.regions.toggle_count_in()
    assert len(playback) == 2
    assert transport == []

    rig.transport(1, 3.0)
    assert len(transport) == 1
    assert transport[0].is_playing
    assert transport[0].autoplay_enabled is False
    assert transport[0].count_in_enabled is True

    # Unchanged poll
    rig.regions.update_playback_state()
    assert len(transport) == 1


def test_set_position_updates_region(rig):
    rig.regions.set_position(20.001)
    state = rig.regions.get_playback_state()
    assert state.current_region_id == 3
    assert state.current_position == 20.001


def test_project_switch_is_detected(rig, adapter):
    seen = []
    rig.regions.add_project_callback(seen.append)

    assert not rig.regions.check_project()
    adapter.ext_state[(EXT_STATE_SECTION, PROJECT_ID_KEY)] = 'project-other'
    adapter.regions = [Region(9, 'New', 0.0, 5.0)]

    assert rig.regions.check_project()
    assert seen == ['project-other']
    assert [r.id for r in rig.regions.get_all_regions()] == [9]


def test_poll_once_checks_project_periodically(rig, adapter):
    seen = []
    rig.regions.add_project_callback(seen.append)
    adapter.ext_state[(EXT_STATE_SECTION, PROJECT_ID_KEY)] = 'project-other'

    for _ in range(rig.regions.config.project_check_every - 1):
        rig.regions.poll_once()
    assert seen == []

    rig.regions.poll_once()
    assert seen == ['project-other']


def test_poll_once_updates_tempo_while_playing(rig, adapter):
    adapter.playstate = 1
    adapter.position = 4.0
    rig.regions.poll_once()
    state = rig.regions.get_playback_state()
    assert state.bpm == 120.0
    assert state.time_signature == (4, 4)
    assert 'BEATPOS' in adapter.commands
