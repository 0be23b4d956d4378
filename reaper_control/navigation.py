"""
Setlist Navigation Module
End-of-region auto-advance and region/setlist navigation.

A fast polling thread (about 15Hz) watches the playback state while a
setlist is selected and playing. When the position gets close to, or just
past, the end of the current region, the next setlist item is cued and
playback continues there. Transport state updates also advance when
playback has stopped on a region end, unless the region carries a hard-stop
(!1008) marker.

All pause/seek/resume sequences run under one lock, so a manual navigation
and an automatic transition never interleave their REAPER commands.
"""

import logging
import threading
import time
from typing import Optional

from .adapters import ReaperConnectionError
from .config import NavigationConfig
from .markers import MarkerService
from .models import PlaybackState, Region, SetlistItem
from .reaper import ReaperClient
from .regions import RegionService
from .setlists import SetlistService

logger = logging.getLogger(__name__)

# Seek just inside the region so the region lookup lands on it
REGION_START_OFFSET = 0.001
# Used when the count-in length cannot be computed (2 bars of 4/4 at 120bpm)
FALLBACK_COUNT_IN_SECONDS = 4.0


class SetlistNavigator:
    """
    Navigation engine for regions and setlists.
    Owns the end-of-region polling thread and the transitioning guard.
    """

    def __init__(self, client: ReaperClient, region_service: RegionService,
                 marker_service: MarkerService, setlist_service: SetlistService,
                 config: Optional[NavigationConfig] = None):
        self.client = client
        self.region_service = region_service
        self.marker_service = marker_service
        self.setlist_service = setlist_service
        self.config = config or NavigationConfig()

        self._is_transitioning = False
        self._seeking = False
        self._flag_lock = threading.Lock()
        self._seek_lock = threading.RLock()

        # Region cued with count-in; checks pause while the pre-roll runs
        self._cued_region: Optional[Region] = None
        self._cue_position = 0.0

        self._running = False
        self._poll_thread: Optional[threading.Thread] = None
        self._resume_at = 0.0

        region_service.add_transport_callback(self.handle_playback_state_update)

    # === Transition guard ===

    @property
    def is_transitioning(self) -> bool:
        with self._flag_lock:
            return self._is_transitioning

    def _begin_transition(self) -> bool:
        """Claim the transition flag. False if another transition holds it."""
        with self._flag_lock:
            if self._is_transitioning or self._seeking:
                return False
            self._is_transitioning = True
            return True

    def _end_transition(self) -> None:
        with self._flag_lock:
            self._is_transitioning = False

    # === Polling ===

    def start_polling(self) -> None:
        if self._running:
            return
        self._running = True
        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True,
                                             name="end-of-region-poll")
        self._poll_thread.start()
        logger.info(f"End-of-region polling started ({self.config.poll_interval * 1000:.0f}ms)")

    def stop_polling(self) -> None:
        self._running = False
        if self._poll_thread and self._poll_thread is not threading.current_thread():
            self._poll_thread.join(timeout=1.0)
        self._poll_thread = None

    @property
    def is_polling(self) -> bool:
        return self._running

    def restart_polling(self) -> None:
        """Clear the transition flag and hold off checks for restart_delay."""
        self._end_transition()
        self._resume_at = time.monotonic() + self.config.restart_delay

    def _checks_suspended(self) -> bool:
        return time.monotonic() < self._resume_at

    def _poll_loop(self) -> None:
        while self._running:
            time.sleep(self.config.poll_interval)
            if self._checks_suspended():
                continue
            try:
                state = self.region_service.get_playback_state()
                if state.selected_setlist_id and state.is_playing:
                    self.check_end_of_region(state)
            except Exception as e:
                logger.exception(f"End-of-region polling error: {e}")

    # === End-of-region detection ===

    def _waiting_for_cued_region(self, state: PlaybackState) -> bool:
        """True while the count-in pre-roll runs. Any other position drops the cue."""
        cued = self._cued_region
        if cued is None:
            return False
        pre_roll_start = self._cue_position - self.config.past_end_tolerance
        if pre_roll_start <= state.current_position < cued.start:
            return True
        self._cued_region = None
        return False

    def check_end_of_region(self, state: Optional[PlaybackState] = None) -> bool:
        """
        Advance to the next setlist item when playback nears the region end.

        Triggers when less than end_threshold seconds remain or the position
        is at most past_end_tolerance seconds past the end. Returns True if
        a transition was made.
        """
        if state is None:
            state = self.region_service.get_playback_state()

        if state.current_region_id is None:
            return False

        region = self.region_service.find_region_by_id(state.current_region_id)
        if region is None or self.is_transitioning:
            return False

        if self._waiting_for_cued_region(state):
            return False

        # REAPER pauses on the marker itself; never cue past a hard stop
        if self.marker_service.has_hard_stop(region):
            return False

        time_to_end = self.marker_service.get_effective_region_end(region) - state.current_position
        near_end = 0 < time_to_end < self.config.end_threshold
        just_past = -self.config.past_end_tolerance <= time_to_end <= 0
        if not (near_end or just_past):
            return False

        if not self._begin_transition():
            return False

        try:
            logger.info(f"End of region {region.name} ({time_to_end:.3f}s left), advancing")
            return self._advance_to_next_item(state.selected_setlist_id, count_in=False)
        except Exception as e:
            logger.exception(f"Error advancing at end of region: {e}")
            return False
        finally:
            self._end_transition()

    def handle_playback_state_update(self, state: PlaybackState) -> bool:
        """
        React to a transport change: advance once playback stopped at a region end.

        Stopped outside any region also counts as ended. Regions with a
        hard-stop marker wait for the performer instead.
        """
        # Every transport change re-checks the cue, so a cursor moved in REAPER releases it
        if self._waiting_for_cued_region(state):
            return False
        if not state.selected_setlist_id or state.is_playing:
            return False
        if self._checks_suspended():
            return False

        region = self.region_service.find_region_by_id(state.current_region_id)

        if state.current_region_id is None:
            at_end = True
        elif region is not None:
            end = self.marker_service.get_effective_region_end(region)
            at_end = abs(state.current_position - end) < self.config.stopped_end_tolerance
        else:
            at_end = False

        if not at_end:
            return False

        if self.marker_service.is_hard_stop_reached(region, state.current_position, state.is_playing):
            logger.info(f"Hard stop reached in {region.name}, waiting for manual resume")
            return False

        if not self._begin_transition():
            return False

        try:
            return self._advance_to_next_item(state.selected_setlist_id, count_in=None)
        except Exception as e:
            logger.exception(f"Error advancing after playback stopped: {e}")
            return False
        finally:
            self._end_transition()

    def _advance_to_next_item(self, setlist_id: str, count_in: Optional[bool]) -> bool:
        item = self.get_next_setlist_item(setlist_id)
        if item is None:
            logger.info("End of setlist reached")
            return False

        region = self.region_service.find_region_by_id(item.region_id)
        if region is None:
            logger.warning(f"Setlist item {item.name} refers to missing region {item.region_id}")
            return False

        # With autoplay off the next song is cued but left stopped
        autoplay = self.region_service.get_playback_state().autoplay_enabled
        return self.seek_to_region_and_play(region, autoplay=autoplay, count_in=count_in)

    # === Setlist items ===

    def _current_region_id(self):
        return self.region_service.get_playback_state().current_region_id

    def get_next_setlist_item(self, setlist_id: Optional[str]) -> Optional[SetlistItem]:
        """Item after the current region's, the first item if no region is current."""
        setlist = self.setlist_service.get_setlist(setlist_id)
        if setlist is None or not setlist.items:
            return None

        current_id = self._current_region_id()
        if current_id is None:
            return setlist.items[0]

        index = setlist.index_of_region(current_id)
        if index == -1 or index >= len(setlist.items) - 1:
            return None
        return setlist.items[index + 1]

    def get_previous_setlist_item(self, setlist_id: Optional[str]) -> Optional[SetlistItem]:
        """Item before the current region's, the first item if no region is current."""
        setlist = self.setlist_service.get_setlist(setlist_id)
        if setlist is None or not setlist.items:
            return None

        current_id = self._current_region_id()
        if current_id is None:
            return setlist.items[0]

        index = setlist.index_of_region(current_id)
        if index <= 0:
            return None
        return setlist.items[index - 1]

    # === Manual navigation ===

    def _region_for_item(self, item: Optional[SetlistItem]) -> Optional[Region]:
        if item is None:
            return None
        return self.region_service.find_region_by_id(item.region_id)

    def navigate_to_next(self) -> bool:
        """Next setlist item, or next region when no setlist is selected."""
        state = self.region_service.get_playback_state()

        region = None
        if state.selected_setlist_id:
            region = self._region_for_item(self.get_next_setlist_item(state.selected_setlist_id))

        if region is None:
            if state.current_region_id is None:
                regions = self.region_service.get_regions()
                region = regions[0] if regions else None
            else:
                region = self.region_service.get_next_region()

        if region is None:
            logger.info("No next region")
            return False
        return self.seek_to_region_and_play(region, autoplay=None, count_in=False)

    def navigate_to_previous(self) -> bool:
        """Previous setlist item, or previous region when no setlist is selected."""
        state = self.region_service.get_playback_state()

        region = None
        if state.selected_setlist_id:
            region = self._region_for_item(self.get_previous_setlist_item(state.selected_setlist_id))

        if region is None:
            if state.current_region_id is None:
                regions = self.region_service.get_regions()
                region = regions[-1] if regions else None
            else:
                region = self.region_service.get_previous_region()

        if region is None:
            logger.info("No previous region")
            return False
        return self.seek_to_region_and_play(region, autoplay=None, count_in=False)

    def seek_to_region(self, region_id) -> bool:
        region = self.region_service.find_region_by_id(region_id)
        if region is None:
            logger.warning(f"Region {region_id} not found")
            return False
        return self.seek_to_region_and_play(region)

    def seek_to_current_region_start(self) -> bool:
        region = self.region_service.get_current_region()
        if region is None:
            logger.info("No current region to restart")
            return False
        return self.seek_to_region_and_play(region, autoplay=None, count_in=False)

    def select_setlist(self, setlist_id: Optional[str]) -> bool:
        """Select a setlist, cue its first region and leave the transport paused."""
        if not self.setlist_service.set_selected_setlist(setlist_id):
            return False

        setlist = self.setlist_service.get_setlist(setlist_id)
        if setlist is None or not setlist.items:
            return True

        region = self._region_for_item(setlist.items[0])
        if region is None:
            return True
        return self.seek_to_region_and_play(region, autoplay=False, count_in=False)

    # === Transport sequences ===

    def _count_in_position(self, region: Region) -> float:
        try:
            duration = self.client.bars_to_seconds(self.config.count_in_bars)
            return max(0.0, region.start - duration)
        except (ReaperConnectionError, ValueError) as e:
            logger.error(f"Could not compute count-in length, using {FALLBACK_COUNT_IN_SECONDS}s: {e}")
            return max(0.0, region.start - FALLBACK_COUNT_IN_SECONDS)

    def seek_to_region_and_play(self, region: Region, autoplay: Optional[bool] = None,
                                count_in: Optional[bool] = None) -> bool:
        """
        Pause, move to a region and resume playback.

        Args:
            region: Target region.
            autoplay: True starts playback, False leaves the transport
                stopped, None resumes only if it was playing and the
                autoplay setting is on.
            count_in: Start two bars early with REAPER's count-in. None uses
                the current setting.

        Returns:
            True if REAPER accepted the commands.
        """
        with self._seek_lock:
            with self._flag_lock:
                self._seeking = True
            try:
                return self._seek_to_region_and_play(region, autoplay, count_in)
            except ReaperConnectionError as e:
                logger.error(f"Error seeking to region {region.name}: {e}")
                return False
            finally:
                with self._flag_lock:
                    self._seeking = False

    def _seek_to_region_and_play(self, region: Region, autoplay: Optional[bool],
                                 count_in: Optional[bool]) -> bool:
        state = self.region_service.get_playback_state()
        was_playing = state.is_playing
        use_count_in = count_in if count_in is not None else state.count_in_enabled
        should_play = state.autoplay_enabled if autoplay is None else autoplay

        bpm = self.marker_service.get_bpm_for_region(region)
        self.client.reset_beat_positions(bpm)
        if bpm is not None:
            logger.info(f"Using {bpm} bpm from marker in {region.name}")

        if was_playing:
            self.client.pause()
            time.sleep(self.config.settle_delay)

        if use_count_in:
            position = self._count_in_position(region)
            logger.info(f"Cueing {region.name} with count-in from {position:.2f}s")
        else:
            position = region.start + REGION_START_OFFSET
            logger.info(f"Cueing {region.name} at {position:.3f}s")

        if not self.client.seek(position):
            return False

        self._cued_region = region if position < region.start else None
        self._cue_position = position
        self.region_service.set_position(position)

        if (was_playing or autoplay is True) and should_play:
            time.sleep(self.config.settle_delay)
            if use_count_in:
                self.client.play_with_count_in()
            else:
                self.client.play()

        self.restart_polling()
        return True

    def seek_to_position(self, position: float) -> bool:
        """Move the play cursor, resuming afterwards if playback was running."""
        with self._seek_lock:
            state = self.region_service.get_playback_state()
            try:
                if state.is_playing:
                    self.client.pause()
                    time.sleep(self.config.seek_delay)

                if not self.client.seek(position):
                    return False
                self._cued_region = None
                self.region_service.set_position(max(0.0, position))

                if state.is_playing and state.autoplay_enabled:
                    time.sleep(self.config.seek_delay)
                    self.client.play()
            except ReaperConnectionError as e:
                logger.error(f"Error seeking to {position}: {e}")
                return False

            self.restart_polling()
            return True

    def handle_toggle_play(self) -> bool:
        """Play/pause, starting the selected setlist when no region is current."""
        state = self.region_service.get_playback_state()

        if state.current_region_id is None and state.selected_setlist_id:
            setlist = self.setlist_service.get_setlist(state.selected_setlist_id)
            if setlist is not None and setlist.items:
                region = self._region_for_item(setlist.items[0])
                if region is not None:
                    return self.seek_to_region_and_play(region, autoplay=True)

        return self.client.toggle_play(state.is_playing, state.is_recording_armed,
                                       state.is_recording)

    def pause(self) -> bool:
        if not self.region_service.get_playback_state().is_playing:
            return False
        return self.client.pause()
