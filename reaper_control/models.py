"""
Data Models
Regions, markers, setlists and the playback state derived from transport polls.
"""

import random
import string
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple


def generate_id(prefix: str = "id") -> str:
    """Generate a unique ID like 'setlist-1700000000000-k3j9x2a'."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


@dataclass
class Region:
    """A named time range in the REAPER project."""
    id: int
    name: str
    start: float
    end: float
    color: str = ""

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, position: float) -> bool:
        return self.start <= position <= self.end

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'start': self.start,
            'end': self.end,
            'color': self.color,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Region':
        return cls(
            id=int(data['id']),
            name=data.get('name', ''),
            start=float(data.get('start', 0.0)),
            end=float(data.get('end', 0.0)),
            color=data.get('color', ''),
        )


@dataclass
class Marker:
    """A project marker. Names starting with '!' carry commands."""
    id: int
    name: str
    position: float
    color: str = "#FF0000"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'position': self.position,
            'color': self.color,
        }


@dataclass
class SetlistItem:
    """A region entry in a setlist."""
    id: str
    region_id: int
    name: str
    position: int

    @classmethod
    def create(cls, region_id: int, name: str, position: int) -> 'SetlistItem':
        return cls(
            id=generate_id("item"),
            region_id=region_id,
            name=name,
            position=position
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'regionId': self.region_id,
            'name': self.name,
            'position': self.position,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'SetlistItem':
        return cls(
            id=data['id'],
            region_id=int(data['regionId']),
            name=data.get('name', ''),
            position=int(data.get('position', 0)),
        )


@dataclass
class Setlist:
    """An ordered subset of regions for a project."""
    id: str
    name: str
    project_id: Optional[str]
    items: List[SetlistItem] = field(default_factory=list)

    @classmethod
    def create(cls, name: str, project_id: Optional[str]) -> 'Setlist':
        return cls(id=generate_id("setlist"), name=name, project_id=project_id)

    def find_item(self, item_id: str) -> Optional[SetlistItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def index_of_region(self, region_id: Optional[int]) -> int:
        """Index of the first item for a region, or -1."""
        if region_id is None:
            return -1
        for i, item in enumerate(self.items):
            if str(item.region_id) == str(region_id):
                return i
        return -1

    def renumber(self) -> None:
        for i, item in enumerate(self.items):
            item.position = i

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'projectId': self.project_id,
            'items': [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Setlist':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            project_id=data.get('projectId'),
            items=[SetlistItem.from_dict(item) for item in data.get('items', [])],
        )


# REAPER playstate values reported in the TRANSPORT line
PLAYSTATE_STOPPED = 0
PLAYSTATE_PLAYING = 1
PLAYSTATE_PAUSED = 2
PLAYSTATE_RECORDING = 5


@dataclass
class PlaybackState:
    """
    Playback state derived from transport polls.
    Holds user toggles (autoplay, count-in) alongside what REAPER reports.
    """
    is_playing: bool = False
    current_position: float = 0.0
    current_region_id: Optional[int] = None
    autoplay_enabled: bool = True
    count_in_enabled: bool = False
    selected_setlist_id: Optional[str] = None
    bpm: float = 120.0
    time_signature: Tuple[int, int] = (4, 4)
    is_recording_armed: bool = False
    is_recording: bool = False

    def update_from_transport_response(self, response: str, regions: List[Region]) -> bool:
        """
        Update from a TRANSPORT line: TRANSPORT\\tplaystate\\tposition\\t...

        Returns True if play or record state, position or current region changed.
        """
        parts = response.strip().split('\t')
        if len(parts) < 3:
            return False

        try:
            playstate = int(float(parts[1]))
            position = float(parts[2])
        except ValueError:
            return False

        is_playing = playstate in (PLAYSTATE_PLAYING, PLAYSTATE_RECORDING)
        is_recording = playstate == PLAYSTATE_RECORDING
        region = find_region_at(regions, position)
        region_id = region.id if region else None

        changed = (
            is_playing != self.is_playing
            or is_recording != self.is_recording
            or position != self.current_position
            or region_id != self.current_region_id
        )

        self.is_playing = is_playing
        self.is_recording = is_recording
        self.current_position = position
        self.current_region_id = region_id
        return changed

    def to_dict(self) -> dict:
        return {
            'isPlaying': self.is_playing,
            'currentPosition': self.current_position,
            'currentRegionId': self.current_region_id,
            'autoplayEnabled': self.autoplay_enabled,
            'countInEnabled': self.count_in_enabled,
            'selectedSetlistId': self.selected_setlist_id,
            'bpm': self.bpm,
            'timeSignature': {
                'numerator': self.time_signature[0],
                'denominator': self.time_signature[1],
            },
            'isRecordingArmed': self.is_recording_armed,
            'isRecording': self.is_recording,
        }


def find_region_at(regions: List[Region], position: float) -> Optional[Region]:
    """
    Find the region for a position.

    A region starting exactly at the position wins over one ending there,
    so seeking to a boundary lands in the following region.
    """
    for region in regions:
        if region.start == position:
            return region
    for region in regions:
        if region.end == position:
            return region
    for region in regions:
        if region.contains(position):
            return region
    return None
