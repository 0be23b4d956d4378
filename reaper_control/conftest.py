"""Shared fixtures: an in-memory REAPER and fully wired services."""

from typing import Dict, List, Tuple
from urllib.parse import unquote

import pytest

from reaper_control.adapters import ReaperConnectionError
from reaper_control.config import NavigationConfig, ReaperConfig
from reaper_control.markers import MarkerService
from reaper_control.models import Marker, Region
from reaper_control.navigation import SetlistNavigator
from reaper_control.reaper import ReaperClient
from reaper_control.regions import RegionService
from reaper_control.setlists import SetlistService, SetlistStorage


class FakeReaperAdapter:
    """Answers web-interface commands from in-memory project state."""

    def __init__(self, regions: List[Region] = (), markers: List[Marker] = ()):
        self.regions = list(regions)
        self.markers = list(markers)
        self.playstate = 0
        self.position = 0.0
        self.ext_state: Dict[Tuple[str, str], str] = {}
        self.commands: List[str] = []
        self.offline = False

    def connect(self) -> None:
        if self.offline:
            raise ReaperConnectionError("REAPER offline")

    def close(self) -> None:
        pass

    def send(self, command: str) -> str:
        if self.offline:
            raise ReaperConnectionError("REAPER offline")
        self.commands.append(command)

        if command == 'TRANSPORT':
            return f"TRANSPORT\t{self.playstate}\t{self.position}\t0\t0:00\t1.1.00\n"
        if command == 'REGION':
            lines = [f"REGION\t{r.name}\t{r.id}\t{r.start}\t{r.end}\t{r.color}" for r in self.regions]
            return '\n'.join(['REGION_LIST'] + lines + ['REGION_LIST_END'])
        if command == 'MARKER':
            lines = [f"MARKER\t{m.name}\t{m.id}\t{m.position}\t{m.color}" for m in self.markers]
            return '\n'.join(['MARKER_LIST'] + lines + ['MARKER_LIST_END'])
        if command == 'BEATPOS':
            # Constant 120bpm in 4/4
            return f"BEATPOS\t{self.playstate}\t{self.position}\t{self.position * 2}\t0\t0\t4\t4\n"
        if command.startswith('GET/PROJEXTSTATE/'):
            section, key = [unquote(p) for p in command.split('/')[2:4]]
            value = self.ext_state.get((section, key), '')
            return f"PROJEXTSTATE\t{section}\t{key}\t{value}\n"
        if command.startswith('SET/PROJEXTSTATE/'):
            section, key, value = [unquote(p) for p in command.split('/')[2:5]]
            self.ext_state[(section, key)] = value
            return ''
        if command.startswith('SET/POS/'):
            self.position = float(command[len('SET/POS/'):])
            return ''
        if command == '1007':
            self.playstate = 1
        elif command == '1008':
            self.playstate = 2 if self.playstate == 1 else 1
        elif command == '40046':
            self.playstate = 5
        return ''

    def actions(self) -> List[str]:
        return [c for c in self.commands if c.isdigit()]

    def seeks(self) -> List[float]:
        return [float(c[len('SET/POS/'):]) for c in self.commands if c.startswith('SET/POS/')]


SONGS = [
    Region(1, 'Intro', 0.0, 10.0),
    Region(2, 'Song A', 10.0, 20.0),
    Region(3, 'Song B', 20.0, 30.0),
    Region(4, 'Outro', 30.0, 40.0),
]


class Rig:
    """A client, services and navigator sharing one fake REAPER."""

    def __init__(self, adapter: FakeReaperAdapter, storage_dir, **navigation):
        self.adapter = adapter
        self.client = ReaperClient(adapter)
        self.regions = RegionService(self.client, ReaperConfig())
        self.markers = MarkerService(self.client)
        self.setlists = SetlistService(SetlistStorage(storage_dir), self.regions)
        timing = dict(settle_delay=0, seek_delay=0, restart_delay=0)
        timing.update(navigation)
        self.navigator = SetlistNavigator(
            self.client, self.regions, self.markers, self.setlists, NavigationConfig(**timing),
        )

        self.regions.check_project()
        self.setlists.load_project(self.regions.project_id)
        self.markers.fetch_markers()

    def transport(self, playstate: int, position: float) -> None:
        """Move REAPER's transport and poll it like the region service does."""
        self.adapter.playstate = playstate
        self.adapter.position = position
        self.regions.update_playback_state()

    def setlist(self, name: str, region_ids: List[int]):
        setlist = self.setlists.create_setlist(name)
        for region_id in region_ids:
            self.setlists.add_item(setlist.id, region_id)
        return setlist


@pytest.fixture
def adapter():
    return FakeReaperAdapter(SONGS)


@pytest.fixture
def rig(adapter, tmp_path):
    return Rig(adapter, tmp_path)
