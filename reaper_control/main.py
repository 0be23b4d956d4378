"""
REAPER Control Engine

Main entry point for the REAPER remote-control service.
Connects to REAPER, runs region/setlist navigation and serves control
surfaces over WebSocket and MIDI.
"""

import argparse
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

from websockets.asyncio.server import ServerConnection

from .adapters import ReaperConnectionError, create_adapter
from .config import AppConfig, ConfigError, configure_logging
from .markers import MarkerService, get_display_markers
from .midi_controller import MidiActivity, MidiController
from .models import Marker, PlaybackState, Region
from .navigation import SetlistNavigator
from .reaper import ReaperClient
from .regions import RegionService
from .server import WebSocketServer
from .setlists import SetlistService, SetlistStorage
from .system_stats import SystemStatsMonitor

logger = logging.getLogger(__name__)


class ReaperControlEngine:
    """
    Main engine wiring REAPER polling, navigation, setlists and MIDI input,
    and relaying state changes to connected clients.
    """

    def __init__(self, config: Optional[AppConfig] = None, client: Optional[ReaperClient] = None):
        self.config = config or AppConfig()

        self.client = client or ReaperClient(create_adapter(self.config.reaper))
        self.region_service = RegionService(self.client, self.config.reaper)
        self.marker_service = MarkerService(self.client)
        self.setlist_service = SetlistService(SetlistStorage(self.config.storage_dir),
                                              self.region_service)
        self.navigator = SetlistNavigator(self.client, self.region_service, self.marker_service,
                                          self.setlist_service, self.config.navigation)

        self.stats_monitor = SystemStatsMonitor(self.config.server.stats_interval)
        self.stats_monitor.add_stats_callback(self._on_system_stats)

        self.midi_controller: Optional[MidiController] = None
        if self.config.midi.enabled:
            self.midi_controller = MidiController(self.config.midi, self.dispatch_event)
            self.midi_controller.add_activity_callback(self._on_midi_activity)

        # Connected WebSocket clients
        self.clients: Set[ServerConnection] = set()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None
        self.running = False

        self.region_service.add_regions_callback(self._on_regions)
        self.region_service.add_playback_callback(self._on_playback_state)
        self.region_service.add_project_callback(self._on_project_changed)
        self.region_service.add_error_callback(self._on_error)
        self.marker_service.add_markers_callback(self._on_markers)
        self.setlist_service.add_callback(self._on_setlist_event)

    # === Lifecycle ===

    def start(self) -> bool:
        """Connect to REAPER and start all polling loops."""
        if not self.client.connect():
            logger.warning("REAPER not reachable yet, polling will keep retrying")

        try:
            self.refresh_project()
        except ReaperConnectionError as e:
            logger.error(f"Initial project load failed: {e}")

        self.region_service.start_polling()
        self.navigator.start_polling()
        if self.midi_controller:
            self.midi_controller.start()
        self.stats_monitor.start()

        self.running = True
        logger.info("Engine started")
        return True

    def stop(self) -> None:
        self.running = False
        self.stats_monitor.stop()
        self.navigator.stop_polling()
        self.region_service.stop_polling()
        if self.midi_controller:
            self.midi_controller.stop()
        self.client.close()
        logger.info("Engine stopped")

    def refresh_project(self) -> None:
        """Load project id, regions, markers and setlists."""
        if not self.region_service.check_project():
            # Same project: check_project did not reload anything
            self.region_service.fetch_regions()
            self.marker_service.fetch_markers()
        self.region_service.update_playback_state()

    def refresh_regions(self) -> bool:
        try:
            self.region_service.fetch_regions()
            self.marker_service.fetch_markers()
        except ReaperConnectionError as e:
            logger.error(f"Failed to refresh regions: {e}")
            return False
        return True

    # === Broadcast ===

    async def broadcast(self, message: dict) -> None:
        """Broadcast message to all connected clients."""
        if not self.clients:
            return

        message_json = json.dumps(message)
        await asyncio.gather(
            *[client.send(message_json) for client in self.clients],
            return_exceptions=True
        )

    def _broadcast_threadsafe(self, message: dict) -> None:
        """Schedule a broadcast from a polling or MIDI thread."""
        if self._event_loop is None or self._event_loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(message), self._event_loop)

    def _on_regions(self, regions: List[Region]) -> None:
        self._broadcast_threadsafe({'type': 'regions', 'data': [r.to_dict() for r in regions]})

    def _on_markers(self, markers: List[Marker]) -> None:
        self._broadcast_threadsafe({'type': 'markers', 'data': self.get_markers()})

    def _on_playback_state(self, state: PlaybackState) -> None:
        self._broadcast_threadsafe({'type': 'playbackState', 'data': state.to_dict()})

    def _on_project_changed(self, project_id: str) -> None:
        self.setlist_service.load_project(project_id)
        try:
            self.marker_service.fetch_markers()
        except ReaperConnectionError as e:
            logger.error(f"Failed to load markers for project {project_id}: {e}")
        self._broadcast_threadsafe({'type': 'projectChanged', 'data': {'projectId': project_id}})

    def _on_error(self, message: str) -> None:
        self._broadcast_threadsafe({'type': 'status', 'data': {'error': message}})

    def _on_system_stats(self, stats: dict) -> None:
        self._broadcast_threadsafe({'type': 'systemStats', 'data': stats})

    def _on_midi_activity(self, activity: MidiActivity) -> None:
        self._broadcast_threadsafe({'type': 'midiActivity', 'data': activity.to_dict()})

    def _on_setlist_event(self, event: str, payload: Any) -> None:
        if event == 'setlists':
            data = [s.to_dict() for s in payload]
            self._broadcast_threadsafe({'type': 'setlists', 'data': data})
        elif event == 'setlist_deleted':
            self._broadcast_threadsafe({'type': 'setlistDeleted', 'data': {'id': payload}})
        elif event == 'selected_setlist':
            self._broadcast_threadsafe({'type': 'selectedSetlist', 'data': {'id': payload}})
        else:
            type_name = 'setlistCreated' if event == 'setlist_created' else 'setlistUpdated'
            self._broadcast_threadsafe({'type': type_name, 'data': payload.to_dict()})

    # === Control events ===

    def dispatch_event(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Run a control event from MIDI or a client. Returns success."""
        payload = payload or {}

        if event == 'togglePlay':
            return self.navigator.handle_toggle_play()

        elif event == 'pause':
            return self.navigator.pause()

        elif event == 'seekToPosition':
            return self.navigator.seek_to_position(float(payload.get('position', 0.0)))

        elif event == 'seekToRegion':
            region_id = payload.get('regionId')
            if region_id is None:
                regions = self.region_service.get_regions()
                if not regions:
                    return False
                region_id = regions[0].id
            return self.navigator.seek_to_region(region_id)

        elif event == 'seekToCurrentRegionStart':
            return self.navigator.seek_to_current_region_start()

        elif event == 'nextRegion':
            return self.navigator.navigate_to_next()

        elif event == 'previousRegion':
            return self.navigator.navigate_to_previous()

        elif event == 'refreshRegions':
            return self.refresh_regions()

        elif event == 'toggleAutoplay':
            self.region_service.toggle_autoplay()
            return True

        elif event == 'toggleCountIn':
            self.region_service.toggle_count_in()
            return True

        logger.warning(f"Unknown control event: {event}")
        return False

    # === Queries ===

    def get_markers(self) -> List[dict]:
        return [m.to_dict() for m in get_display_markers(self.marker_service.markers)]

    def get_status(self) -> dict:
        return {
            'running': self.running,
            'connected': self.client.is_connected,
            'projectId': self.region_service.project_id,
            'clients': len(self.clients),
            'midiPorts': self.midi_controller.connected_ports if self.midi_controller else [],
            'playbackState': self.region_service.get_playback_state().to_dict(),
            'systemStats': self.stats_monitor.latest,
        }


async def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="REAPER remote control service")
    parser.add_argument("--config", help="Path to TOML config (default: $REAPER_CONTROL_CONFIG or config.toml)")
    args = parser.parse_args(argv)

    try:
        config = AppConfig.load(args.config)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(str(e))
        raise SystemExit(1)

    configure_logging(config.logging)
    logger.info("REAPER Control starting")

    engine = ReaperControlEngine(config)

    # Store the event loop reference for thread-safe callbacks
    engine._event_loop = asyncio.get_running_loop()
    engine.start()

    server = WebSocketServer(engine, config.server.websocket_host, config.server.websocket_port)
    try:
        await server.start()
    finally:
        server.stop()
        engine.stop()


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    run()
