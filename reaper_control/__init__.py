"""REAPER remote control: region/setlist navigation over WebSocket and MIDI."""

from .config import AppConfig, ConfigError
from .models import Marker, PlaybackState, Region, Setlist, SetlistItem
from .reaper import ReaperClient
from .regions import RegionService
from .markers import MarkerService
from .setlists import SetlistError, SetlistService, SetlistStorage
from .navigation import SetlistNavigator
from .main import ReaperControlEngine

__version__ = "0.1.0"

__all__ = [
    'AppConfig',
    'ConfigError',
    'Marker',
    'PlaybackState',
    'Region',
    'Setlist',
    'SetlistItem',
    'ReaperClient',
    'RegionService',
    'MarkerService',
    'SetlistError',
    'SetlistService',
    'SetlistStorage',
    'SetlistNavigator',
    'ReaperControlEngine',
]
