"""
Setlist Module
Setlist CRUD and per-project JSON persistence.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .models import Setlist, SetlistItem
from .regions import RegionService

logger = logging.getLogger(__name__)


class SetlistError(Exception):
    """Raised when a setlist operation refers to something that does not exist."""
    pass


class SetlistStorage:
    """Stores each project's setlists in <directory>/<project_id>.json."""

    def __init__(self, directory: str = "setlists"):
        self.directory = Path(directory)

    def _path(self, project_id: str) -> Path:
        return self.directory / f"{project_id}.json"

    def save(self, project_id: str, setlists: List[Setlist],
             selected_setlist_id: Optional[str]) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(project_id)
        data = {
            'setlists': [s.to_dict() for s in setlists],
            'metadata': {
                'selectedSetlistId': selected_setlist_id,
                'lastUpdated': datetime.now(timezone.utc).isoformat(),
            },
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        logger.debug(f"Saved {len(setlists)} setlists to {path}")
        return path

    def load(self, project_id: str) -> Tuple[List[Setlist], Optional[str]]:
        """Load setlists and the stored selection; empty if no file exists."""
        path = self._path(project_id)
        if not path.exists():
            logger.info(f"No setlist file for project {project_id}")
            return [], None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read setlists from {path}: {e}")
            return [], None

        # Older files hold a bare list of setlists
        if isinstance(data, list):
            raw_setlists, selected = data, None
        else:
            raw_setlists = data.get('setlists', [])
            selected = data.get('metadata', {}).get('selectedSetlistId')

        setlists = []
        for raw in raw_setlists:
            try:
                setlists.append(Setlist.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed setlist in {path}: {e}")

        logger.info(f"Loaded {len(setlists)} setlists for project {project_id}")
        return setlists, selected


class SetlistService:
    """
    Setlists for the current REAPER project.
    Every mutation is saved immediately and reported to listeners.
    """

    def __init__(self, storage: SetlistStorage, region_service: RegionService):
        self.storage = storage
        self.region_service = region_service
        self.project_id: Optional[str] = None
        self._setlists: Dict[str, Setlist] = {}
        self._lock = threading.RLock()

        # Callbacks: (event name, payload)
        self._callbacks: List[Callable[[str, object], None]] = []

        region_service.set_setlist_lookup(self.get_setlist)

    def add_callback(self, callback: Callable[[str, object], None]) -> None:
        self._callbacks.append(callback)

    def _emit(self, event: str, payload) -> None:
        for callback in self._callbacks:
            try:
                callback(event, payload)
            except Exception as e:
                logger.error(f"Setlist callback error ({event}): {e}")

    def _save(self) -> None:
        if not self.project_id:
            logger.warning("Cannot save setlists: no project id")
            return
        selected = self.region_service.get_playback_state().selected_setlist_id
        with self._lock:
            setlists = list(self._setlists.values())
        try:
            self.storage.save(self.project_id, setlists, selected)
        except OSError as e:
            logger.error(f"Failed to save setlists for {self.project_id}: {e}")

    # === Queries ===

    def load_project(self, project_id: str) -> List[Setlist]:
        """Switch to a project's setlists."""
        setlists, stored_selection = self.storage.load(project_id)
        with self._lock:
            self.project_id = project_id
            self._setlists = {s.id: s for s in setlists}

        selected = self.region_service.get_playback_state().selected_setlist_id
        if selected and selected not in self._setlists:
            logger.warning(f"Selected setlist {selected} not found, clearing selection")
            self.region_service.set_selected_setlist_id(None)
        elif not selected and stored_selection in self._setlists:
            self.region_service.set_selected_setlist_id(stored_selection)

        self._emit('setlists', self.get_setlists())
        return self.get_setlists()

    def get_setlists(self) -> List[Setlist]:
        with self._lock:
            return list(self._setlists.values())

    def get_setlist(self, setlist_id: Optional[str]) -> Optional[Setlist]:
        if not setlist_id:
            return None
        with self._lock:
            return self._setlists.get(setlist_id)

    def get_selected_setlist(self) -> Optional[Setlist]:
        return self.get_setlist(self.region_service.get_playback_state().selected_setlist_id)

    # === Mutations ===

    def create_setlist(self, name: str) -> Setlist:
        setlist = Setlist.create(name, self.project_id)
        with self._lock:
            self._setlists[setlist.id] = setlist
        self._save()

        logger.info(f"Created setlist {setlist.id} ({name})")
        self._emit('setlist_created', setlist)
        self._emit('setlists', self.get_setlists())
        return setlist

    def update_setlist(self, setlist_id: str, name: str) -> Optional[Setlist]:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                logger.warning(f"Setlist not found: {setlist_id}")
                return None
            setlist.name = name
        self._save()

        logger.info(f"Renamed setlist {setlist_id} to {name}")
        self._emit('setlist_updated', setlist)
        self._emit('setlists', self.get_setlists())
        return setlist

    def delete_setlist(self, setlist_id: str) -> bool:
        with self._lock:
            setlist = self._setlists.pop(setlist_id, None)
        if setlist is None:
            logger.warning(f"Setlist not found: {setlist_id}")
            return False

        if self.region_service.get_playback_state().selected_setlist_id == setlist_id:
            self.region_service.set_selected_setlist_id(None)
        self._save()

        logger.info(f"Deleted setlist {setlist_id} ({setlist.name})")
        self._emit('setlist_deleted', setlist_id)
        self._emit('setlists', self.get_setlists())
        return True

    def add_item(self, setlist_id: str, region_id: int,
                 position: Optional[int] = None) -> Optional[SetlistItem]:
        """
        Add a region to a setlist, appending unless a position is given.

        Raises:
            SetlistError: If the setlist exists but the region does not.
        """
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                logger.warning(f"Setlist not found: {setlist_id}")
                return None

            region = self.region_service.find_region_by_id(region_id)
            if region is None:
                raise SetlistError(f"Region {region_id} not found")

            if position is None or position >= len(setlist.items):
                position = len(setlist.items)
            position = max(0, position)

            item = SetlistItem.create(region.id, region.name, position)
            setlist.items.insert(position, item)
            setlist.renumber()
        self._save()

        logger.info(f"Added region {region.name} to setlist {setlist_id} at {position}")
        self._emit('setlist_updated', setlist)
        return item

    def remove_item(self, setlist_id: str, item_id: str) -> bool:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                logger.warning(f"Setlist not found: {setlist_id}")
                return False

            item = setlist.find_item(item_id)
            if item is None:
                logger.warning(f"Item {item_id} not found in setlist {setlist_id}")
                return False

            setlist.items.remove(item)
            setlist.renumber()
        self._save()

        logger.info(f"Removed {item.name} from setlist {setlist_id}")
        self._emit('setlist_updated', setlist)
        return True

    def move_item(self, setlist_id: str, item_id: str, new_position: int) -> Optional[Setlist]:
        with self._lock:
            setlist = self._setlists.get(setlist_id)
            if setlist is None:
                logger.warning(f"Setlist not found: {setlist_id}")
                return None

            item = setlist.find_item(item_id)
            if item is None:
                logger.warning(f"Item {item_id} not found in setlist {setlist_id}")
                return None

            if not 0 <= new_position < len(setlist.items):
                logger.warning(f"Invalid position {new_position} for setlist {setlist_id}")
                return None

            setlist.items.remove(item)
            setlist.items.insert(new_position, item)
            setlist.renumber()
        self._save()

        logger.info(f"Moved {item.name} to position {new_position} in setlist {setlist_id}")
        self._emit('setlist_updated', setlist)
        return setlist

    def set_selected_setlist(self, setlist_id: Optional[str]) -> bool:
        """Select a setlist, or clear the selection with None."""
        if setlist_id is not None and self.get_setlist(setlist_id) is None:
            logger.warning(f"Cannot select unknown setlist {setlist_id}")
            return False

        self.region_service.set_selected_setlist_id(setlist_id)
        self._save()
        logger.info(f"Selected setlist: {setlist_id}")
        self._emit('selected_setlist', setlist_id)
        return True
