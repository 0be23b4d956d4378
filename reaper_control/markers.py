"""
Marker Commands Module
Interprets command markers placed inside regions:

    !bpm:<n>     tempo to assume when the region starts
    !length:<n>  region length override in seconds
    !1008        hard stop: playback halts at region end, no auto-advance
"""

import logging
import re
import threading
from typing import Callable, List, Optional

from .models import Marker, Region

logger = logging.getLogger(__name__)

BPM_PATTERN = re.compile(r'!bpm:(\d+(\.\d+)?)')
LENGTH_PATTERN = re.compile(r'!length:(\d+(\.\d+)?)')
HARD_STOP_COMMAND = '!1008'

_COMMAND_TOKEN = re.compile(r'^(!\d+|!length:\d+(\.\d+)?|!bpm:\d+(\.\d+)?)$')

# Hard stop is considered reached within this distance of the effective end
HARD_STOP_TOLERANCE = 0.5
HARD_STOP_PROGRESS = 0.99


def extract_bpm(name: str) -> Optional[float]:
    match = BPM_PATTERN.search(name)
    return float(match.group(1)) if match else None


def extract_length(name: str) -> Optional[float]:
    match = LENGTH_PATTERN.search(name)
    return float(match.group(1)) if match else None


def markers_in_region(markers: List[Marker], region: Optional[Region]) -> List[Marker]:
    if region is None or not markers:
        return []
    return [m for m in markers if region.start <= m.position <= region.end]


def get_bpm_for_region(markers: List[Marker], region: Optional[Region]) -> Optional[float]:
    """Tempo from the first !bpm marker in the region, or None."""
    for marker in markers_in_region(markers, region):
        bpm = extract_bpm(marker.name)
        if bpm is not None:
            return bpm
    return None


def get_custom_length_for_region(markers: List[Marker], region: Optional[Region]) -> Optional[float]:
    """Length from the first !length marker in the region, or None."""
    for marker in markers_in_region(markers, region):
        length = extract_length(marker.name)
        if length is not None:
            return length
    return None


def has_hard_stop_marker(markers: List[Marker], region: Optional[Region]) -> bool:
    return any(HARD_STOP_COMMAND in m.name for m in markers_in_region(markers, region))


def get_effective_region_length(markers: List[Marker], region: Region) -> float:
    custom = get_custom_length_for_region(markers, region)
    if custom is not None:
        return custom
    return region.end - region.start


def get_effective_region_end(markers: List[Marker], region: Region) -> float:
    return region.start + get_effective_region_length(markers, region)


def is_command_only_marker(name: str) -> bool:
    """True if the name holds nothing but marker commands."""
    tokens = name.split()
    if not tokens:
        return False
    return all(_COMMAND_TOKEN.match(token) for token in tokens)


def get_display_markers(markers: List[Marker]) -> List[Marker]:
    """Markers worth showing to a performer."""
    return [m for m in markers if not is_command_only_marker(m.name)]


def is_hard_stop_reached(markers: List[Marker], region: Optional[Region],
                         position: float, is_playing: bool) -> bool:
    """True once playback has halted at a region carrying a !1008 marker."""
    if region is None or is_playing:
        return False
    if not has_hard_stop_marker(markers, region):
        return False

    length = get_effective_region_length(markers, region)
    end = region.start + length
    if abs(position - end) < HARD_STOP_TOLERANCE:
        return True
    if length > 0 and (position - region.start) / length > HARD_STOP_PROGRESS:
        return True
    return False


class MarkerService:
    """Keeps the project's marker list in sync with REAPER."""

    def __init__(self, client):
        self.client = client
        self._markers: List[Marker] = []
        self._lock = threading.Lock()
        self._markers_callbacks: List[Callable[[List[Marker]], None]] = []

    @property
    def markers(self) -> List[Marker]:
        with self._lock:
            return list(self._markers)

    def add_markers_callback(self, callback: Callable[[List[Marker]], None]) -> None:
        self._markers_callbacks.append(callback)

    def fetch_markers(self) -> List[Marker]:
        """Reload markers from REAPER, notifying listeners on change."""
        markers = self.client.get_markers()
        with self._lock:
            changed = markers != self._markers
            self._markers = markers

        if changed:
            logger.info(f"Markers updated: {len(markers)} markers")
            self._notify_markers(markers)
        return markers

    def get_bpm_for_region(self, region: Optional[Region]) -> Optional[float]:
        return get_bpm_for_region(self.markers, region)

    def get_effective_region_end(self, region: Region) -> float:
        return get_effective_region_end(self.markers, region)

    def has_hard_stop(self, region: Optional[Region]) -> bool:
        return has_hard_stop_marker(self.markers, region)

    def is_hard_stop_reached(self, region: Optional[Region], position: float,
                             is_playing: bool) -> bool:
        return is_hard_stop_reached(self.markers, region, position, is_playing)

    def _notify_markers(self, markers: List[Marker]) -> None:
        for callback in self._markers_callbacks:
            try:
                callback(markers)
            except Exception as e:
                logger.error(f"Marker callback error: {e}")
