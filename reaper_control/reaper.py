"""
REAPER Client Module
Typed commands and response parsing on top of a REAPER adapter.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote

from .adapters import DEFAULT_TRANSPORT, ReaperConnectionError
from .bpm import BpmCalculator, bars_to_seconds
from .models import Marker, Region, generate_id

logger = logging.getLogger(__name__)

# REAPER action command IDs
ACTION_PLAY = 1007
ACTION_PAUSE = 1008
ACTION_RECORD = 40046
ACTION_STOP_SAVE_RECORDING = 40667
ACTION_ENABLE_COUNT_IN = 40363
ACTION_GO_TO_START = 40755

EXT_STATE_SECTION = "ReaperControl"
PROJECT_ID_KEY = "ProjectId"
SELECTED_SETLIST_KEY = "SelectedSetlistId"

DEFAULT_BEATPOS = "BEATPOS\t0\t0\t0\t0\t4\t4\t4"

_ESCAPE = re.compile(r'\\(n|t|\\)')
_UNESCAPED = {'n': '\n', 't': '\t', '\\': '\\'}


@dataclass
class BeatPosition:
    """Parsed BEATPOS line."""
    play_state: int
    position_seconds: float
    full_beat_position: float
    measure_count: int
    beats_in_measure: float
    ts_numerator: int
    ts_denominator: int


def _find_line(response: str, prefix: str) -> Optional[str]:
    for line in response.splitlines():
        if line.startswith(prefix + '\t'):
            return line
    return None


def decode_ext_state_value(value: str) -> str:
    return _ESCAPE.sub(lambda m: _UNESCAPED[m.group(1)], value)


def parse_regions(response: str) -> List[Region]:
    """Parse REGION\\tname\\tid\\tstart\\tend\\tcolor lines."""
    regions = []
    for line in response.splitlines():
        parts = line.split('\t')
        if parts[0] != 'REGION' or len(parts) < 5:
            continue
        try:
            regions.append(Region(
                id=int(parts[2]),
                name=parts[1],
                start=float(parts[3]),
                end=float(parts[4]),
                color=parts[5] if len(parts) > 5 else "",
            ))
        except ValueError:
            logger.warning(f"Skipping malformed region line: {line!r}")
    return regions


def parse_markers(response: str) -> List[Marker]:
    """Parse MARKER\\tname\\tid\\tposition\\tcolor lines."""
    markers = []
    for line in response.splitlines():
        parts = line.split('\t')
        if parts[0] != 'MARKER' or len(parts) < 4:
            continue
        try:
            markers.append(Marker(
                id=int(parts[2]),
                name=parts[1],
                position=float(parts[3]),
                color=parts[4] if len(parts) > 4 and parts[4] else "#FF0000",
            ))
        except ValueError:
            logger.warning(f"Skipping malformed marker line: {line!r}")
    return markers


def parse_beat_position(response: str) -> BeatPosition:
    line = _find_line(response, 'BEATPOS') or DEFAULT_BEATPOS
    parts = line.split('\t')
    if len(parts) < 8:
        parts = DEFAULT_BEATPOS.split('\t')
    return BeatPosition(
        play_state=int(float(parts[1])),
        position_seconds=float(parts[2]),
        full_beat_position=float(parts[3]),
        measure_count=int(float(parts[4])),
        beats_in_measure=float(parts[5]),
        ts_numerator=int(float(parts[6])),
        ts_denominator=int(float(parts[7])),
    )


class ReaperClient:
    """
    REAPER command client.
    Wraps an adapter with typed transport, region, marker and ext-state calls.
    """

    def __init__(self, adapter):
        self.adapter = adapter
        self.bpm_calculator = BpmCalculator()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        try:
            self.adapter.connect()
            self._connected = True
        except ReaperConnectionError as e:
            logger.error(f"Failed to connect to REAPER: {e}")
            self._connected = False
        return self._connected

    def close(self) -> None:
        self.adapter.close()
        self._connected = False

    def send(self, command: str) -> str:
        try:
            response = self.adapter.send(command)
        except ReaperConnectionError:
            self._connected = False
            raise
        self._connected = True
        return response

    def run_action(self, action_id: int) -> bool:
        try:
            self.send(str(action_id))
            return True
        except ReaperConnectionError as e:
            logger.error(f"Action {action_id} failed: {e}")
            return False

    # === Transport ===

    def get_transport(self) -> str:
        """Raw TRANSPORT line, or the stopped-at-zero default."""
        response = self.send('TRANSPORT')
        return _find_line(response, 'TRANSPORT') or DEFAULT_TRANSPORT

    def play(self) -> bool:
        return self.run_action(ACTION_PLAY)

    def pause(self) -> bool:
        return self.run_action(ACTION_PAUSE)

    def record(self) -> bool:
        return self.run_action(ACTION_RECORD)

    def stop_recording(self) -> bool:
        return self.run_action(ACTION_STOP_SAVE_RECORDING)

    def play_with_count_in(self) -> bool:
        """Enable REAPER's count-in, then start playback."""
        if not self.run_action(ACTION_ENABLE_COUNT_IN):
            return False
        return self.play()

    def toggle_play(self, is_playing: bool, recording_armed: bool = False,
                    is_recording: bool = False) -> bool:
        """Stop and save a take while recording, else pause, record or play."""
        if is_recording:
            return self.stop_recording()
        if is_playing:
            return self.pause()
        if recording_armed:
            return self.record()
        return self.play()

    def seek(self, position: float) -> bool:
        position = max(0.0, position)
        try:
            self.send(f"SET/POS/{position}")
            return True
        except ReaperConnectionError as e:
            logger.error(f"Seek to {position:.3f}s failed: {e}")
            return False

    def go_to_start(self) -> bool:
        return self.run_action(ACTION_GO_TO_START)

    # === Regions and markers ===

    def get_regions(self) -> List[Region]:
        return parse_regions(self.send('REGION'))

    def get_markers(self) -> List[Marker]:
        return parse_markers(self.send('MARKER'))

    # === Tempo ===

    def get_beat_position(self) -> BeatPosition:
        return parse_beat_position(self.send('BEATPOS'))

    def get_time_signature(self) -> Tuple[int, int]:
        try:
            beat = self.get_beat_position()
        except ReaperConnectionError as e:
            logger.warning(f"Could not read time signature, assuming 4/4: {e}")
            return 4, 4
        return beat.ts_numerator, beat.ts_denominator

    def get_bpm(self) -> float:
        """Sample the beat position and return the current tempo estimate."""
        try:
            beat = self.get_beat_position()
            self.bpm_calculator.add_beat_position(beat.position_seconds, beat.full_beat_position)
        except ReaperConnectionError as e:
            logger.warning(f"Could not sample beat position: {e}")
        return self.bpm_calculator.calculate_bpm()

    def reset_beat_positions(self, initial_bpm: Optional[float] = None) -> None:
        self.bpm_calculator.reset(initial_bpm)

    def bars_to_seconds(self, bars: float, default_bpm: float = 90.0) -> float:
        numerator, _ = self.get_time_signature()
        bpm = self.bpm_calculator.calculate_bpm()
        return bars_to_seconds(bars, bpm, numerator, default_bpm)

    # === Project extended state ===

    def get_ext_state(self, section: str, key: str) -> str:
        """Read a project ext-state value, '' if unset."""
        response = self.send(f"GET/PROJEXTSTATE/{quote(section, safe='')}/{quote(key, safe='')}")
        for line in response.splitlines():
            parts = line.split('\t')
            if parts[0] == 'PROJEXTSTATE' and len(parts) >= 4:
                return decode_ext_state_value(parts[3])
        return ''

    def set_ext_state(self, section: str, key: str, value: str) -> bool:
        try:
            self.send(f"SET/PROJEXTSTATE/{quote(section, safe='')}/{quote(key, safe='')}/"
                      f"{quote(value, safe='')}")
            return True
        except ReaperConnectionError as e:
            logger.error(f"Failed to set ext state {section}/{key}: {e}")
            return False

    def get_project_id(self) -> str:
        """Project id stored in the project, created on first use."""
        project_id = self.get_ext_state(EXT_STATE_SECTION, PROJECT_ID_KEY)
        if project_id:
            return project_id

        project_id = generate_id("project")
        self.set_ext_state(EXT_STATE_SECTION, PROJECT_ID_KEY, project_id)
        logger.info(f"Generated new project id: {project_id}")
        return project_id
