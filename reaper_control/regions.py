"""
Region Service Module
Polls REAPER's transport, tracks the current region and owns the playback state.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, List, Optional

from .adapters import ReaperConnectionError
from .config import ReaperConfig
from .models import PlaybackState, Region, Setlist, find_region_at
from .reaper import EXT_STATE_SECTION, SELECTED_SETLIST_KEY, ReaperClient

logger = logging.getLogger(__name__)


class RegionService:
    """
    Region list and playback state kept in sync with REAPER.

    A daemon thread polls TRANSPORT at the configured interval and notifies
    playback callbacks whenever play state, position or region changes.
    """

    def __init__(self, client: ReaperClient, config: Optional[ReaperConfig] = None):
        self.client = client
        self.config = config or ReaperConfig()
        self.project_id: Optional[str] = None

        self._regions: List[Region] = []
        self._state = PlaybackState()
        self._lock = threading.RLock()
        self._setlist_lookup: Optional[Callable[[str], Optional[Setlist]]] = None

        # Callbacks
        self._regions_callbacks: List[Callable[[List[Region]], None]] = []
        self._playback_callbacks: List[Callable[[PlaybackState], None]] = []
        self._transport_callbacks: List[Callable[[PlaybackState], None]] = []  # poll-detected only
        self._project_callbacks: List[Callable[[str], None]] = []
        self._error_callbacks: List[Callable[[str], None]] = []

        self._running = False
        self._poll_thread: Optional[threading.Thread] = None
        self._poll_count = 0
        self._connection_lost = False

    # === Callbacks ===

    def add_regions_callback(self, callback: Callable[[List[Region]], None]) -> None:
        self._regions_callbacks.append(callback)

    def add_playback_callback(self, callback: Callable[[PlaybackState], None]) -> None:
        self._playback_callbacks.append(callback)

    def add_transport_callback(self, callback: Callable[[PlaybackState], None]) -> None:
        """Called only when a transport poll sees a change, not on setting changes."""
        self._transport_callbacks.append(callback)

    def add_project_callback(self, callback: Callable[[str], None]) -> None:
        self._project_callbacks.append(callback)

    def add_error_callback(self, callback: Callable[[str], None]) -> None:
        self._error_callbacks.append(callback)

    def set_setlist_lookup(self, lookup: Callable[[str], Optional[Setlist]]) -> None:
        """Resolve setlist ids for setlist-ordered region lists."""
        self._setlist_lookup = lookup

    # === Regions ===

    def fetch_regions(self) -> List[Region]:
        """Reload regions from REAPER, notifying listeners on change."""
        regions = self.client.get_regions()
        with self._lock:
            changed = regions != self._regions
            self._regions = regions

        if changed:
            logger.info(f"Regions updated: {len(regions)} regions")
            self._notify_regions()
        return regions

    def get_all_regions(self) -> List[Region]:
        with self._lock:
            return sorted(self._regions, key=lambda r: r.start)

    def get_regions(self) -> List[Region]:
        """
        Regions in navigation order.

        With a non-empty setlist selected, that setlist's regions in item
        order; otherwise every region sorted by start.
        """
        with self._lock:
            regions = list(self._regions)
            setlist_id = self._state.selected_setlist_id

        if setlist_id and self._setlist_lookup is not None:
            setlist = self._setlist_lookup(setlist_id)
            if setlist is not None and setlist.items:
                by_id = {str(r.id): r for r in regions}
                items = sorted(setlist.items, key=lambda item: item.position)
                return [by_id[str(item.region_id)] for item in items
                        if str(item.region_id) in by_id]

        return sorted(regions, key=lambda r: r.start)

    def find_region_by_id(self, region_id) -> Optional[Region]:
        if region_id is None:
            return None
        with self._lock:
            for region in self._regions:
                if str(region.id) == str(region_id):
                    return region
        return None

    def get_current_region(self) -> Optional[Region]:
        return self.find_region_by_id(self.get_playback_state().current_region_id)

    def _current_index(self, regions: List[Region]) -> int:
        current_id = self.get_playback_state().current_region_id
        if current_id is None:
            return -1
        for i, region in enumerate(regions):
            if str(region.id) == str(current_id):
                return i
        return -1

    def get_next_region(self) -> Optional[Region]:
        regions = self.get_regions()
        index = self._current_index(regions)
        if index == -1 or index >= len(regions) - 1:
            return None
        return regions[index + 1]

    def get_previous_region(self) -> Optional[Region]:
        regions = self.get_regions()
        index = self._current_index(regions)
        if index <= 0:
            return None
        return regions[index - 1]

    # === Playback state ===

    def get_playback_state(self) -> PlaybackState:
        """Snapshot of the playback state."""
        with self._lock:
            return replace(self._state)

    def update_playback_state(self) -> bool:
        """Poll TRANSPORT once. Returns True if the state changed."""
        response = self.client.get_transport()
        with self._lock:
            changed = self._state.update_from_transport_response(response, self._regions)

        if changed:
            self._notify_playback()
            self._notify_transport()
        return changed

    def set_position(self, position: float) -> None:
        """Record a seek locally so the next check does not see the old region."""
        with self._lock:
            self._state.current_position = position
            region = find_region_at(self._regions, position)
            self._state.current_region_id = region.id if region else None

    def update_tempo(self) -> None:
        bpm = self.client.get_bpm()
        time_signature = self.client.get_time_signature()
        with self._lock:
            changed = (bpm, time_signature) != (self._state.bpm, self._state.time_signature)
            self._state.bpm = bpm
            self._state.time_signature = time_signature
        if changed:
            self._notify_playback()

    def set_autoplay(self, enabled: bool) -> None:
        with self._lock:
            self._state.autoplay_enabled = enabled
        logger.info(f"Autoplay {'enabled' if enabled else 'disabled'}")
        self._notify_playback()

    def toggle_autoplay(self) -> bool:
        enabled = not self.get_playback_state().autoplay_enabled
        self.set_autoplay(enabled)
        return enabled

    def set_count_in(self, enabled: bool) -> None:
        with self._lock:
            self._state.count_in_enabled = enabled
        logger.info(f"Count-in {'enabled' if enabled else 'disabled'}")
        self._notify_playback()

    def toggle_count_in(self) -> bool:
        enabled = not self.get_playback_state().count_in_enabled
        self.set_count_in(enabled)
        return enabled

    def set_recording_armed(self, armed: bool) -> None:
        with self._lock:
            self._state.is_recording_armed = armed
        self._notify_playback()

    def set_selected_setlist_id(self, setlist_id: Optional[str], persist: bool = True) -> None:
        """Select a setlist and store the choice in the REAPER project."""
        with self._lock:
            self._state.selected_setlist_id = setlist_id

        if persist:
            self.client.set_ext_state(EXT_STATE_SECTION, SELECTED_SETLIST_KEY, setlist_id or '')
        self._notify_playback()

    def load_selected_setlist_id(self) -> Optional[str]:
        """Restore the selected setlist id stored in the project."""
        try:
            setlist_id = self.client.get_ext_state(EXT_STATE_SECTION, SELECTED_SETLIST_KEY) or None
        except ReaperConnectionError as e:
            logger.warning(f"Could not read selected setlist: {e}")
            return None
        with self._lock:
            self._state.selected_setlist_id = setlist_id
        return setlist_id

    # === Project ===

    def check_project(self) -> bool:
        """Detect a project switch in REAPER. Returns True if it changed."""
        project_id = self.client.get_project_id()
        if project_id == self.project_id:
            return False

        previous = self.project_id
        self.project_id = project_id
        if previous is None:
            logger.info(f"Project id: {project_id}")
        else:
            logger.info(f"Project changed from {previous} to {project_id}")

        self.load_selected_setlist_id()
        self.fetch_regions()
        for callback in self._project_callbacks:
            try:
                callback(project_id)
            except Exception as e:
                logger.error(f"Project callback error: {e}")
        return True

    # === Polling ===

    def start_polling(self) -> None:
        if self._running:
            return
        self._running = True
        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True,
                                             name="region-poll")
        self._poll_thread.start()
        logger.info(f"Transport polling started ({self.config.polling_interval * 1000:.0f}ms)")

    def stop_polling(self) -> None:
        self._running = False
        if self._poll_thread and self._poll_thread is not threading.current_thread():
            self._poll_thread.join(timeout=2.0)
        self._poll_thread = None

    @property
    def is_polling(self) -> bool:
        return self._running

    def poll_once(self) -> None:
        """One polling step: transport, tempo and, periodically, the project."""
        self._poll_count += 1
        if self._poll_count % self.config.project_check_every == 0:
            self.check_project()

        changed = self.update_playback_state()
        if changed and self.get_playback_state().is_playing:
            self.update_tempo()

    def _poll_loop(self) -> None:
        while self._running:
            start = time.perf_counter()
            try:
                self.poll_once()
                if self._connection_lost:
                    logger.info("Connection to REAPER restored")
                    self._connection_lost = False
            except ReaperConnectionError as e:
                if not self._connection_lost:
                    logger.error(f"Lost connection to REAPER: {e}")
                    self._notify_error(str(e))
                    self._connection_lost = True
            except Exception as e:
                logger.exception(f"Transport poll error: {e}")

            elapsed = time.perf_counter() - start
            time.sleep(max(0.0, self.config.polling_interval - elapsed))

    # === Notifications ===

    def _notify_regions(self) -> None:
        regions = self.get_all_regions()
        for callback in self._regions_callbacks:
            try:
                callback(regions)
            except Exception as e:
                logger.error(f"Regions callback error: {e}")

    def _notify_playback(self) -> None:
        state = self.get_playback_state()
        for callback in self._playback_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Playback callback error: {e}")

    def _notify_transport(self) -> None:
        state = self.get_playback_state()
        for callback in self._transport_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"Transport callback error: {e}")

    def _notify_error(self, message: str) -> None:
        for callback in self._error_callbacks:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")
