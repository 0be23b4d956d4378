"""
WebSocket Server Module
JSON message relay between control surfaces and the engine.
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from .setlists import SetlistError

if TYPE_CHECKING:
    from .main import ReaperControlEngine

logger = logging.getLogger(__name__)

# Client messages forwarded to ReaperControlEngine.dispatch_event
CONTROL_EVENTS = {
    'togglePlay',
    'pause',
    'seekToPosition',
    'seekToRegion',
    'seekToCurrentRegionStart',
    'nextRegion',
    'previousRegion',
    'refreshRegions',
    'toggleAutoplay',
    'toggleCountIn',
}


class WebSocketServer:
    """WebSocket server for control surface communication."""

    def __init__(self, engine: "ReaperControlEngine", host: str = "0.0.0.0", port: int = 8765):
        self.engine = engine
        self.host = host
        self.port = port
        self.server: Optional[Server] = None

    async def handle_client(self, websocket: ServerConnection) -> None:
        """Handle a connected client."""
        self.engine.clients.add(websocket)
        logger.info(f"Client connected. Total clients: {len(self.engine.clients)}")

        try:
            # Send initial state
            for message in self.initial_messages():
                await websocket.send(json.dumps(message))

            # Handle incoming messages
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    await websocket.send(json.dumps({
                        'type': 'status',
                        'data': {'error': 'Invalid JSON'}
                    }))
                    continue

                response = await self.handle_message(data)
                if response:
                    await websocket.send(json.dumps(response))

        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.engine.clients.discard(websocket)
            logger.info(f"Client disconnected. Total clients: {len(self.engine.clients)}")

    def initial_messages(self) -> list:
        engine = self.engine
        return [
            {'type': 'regions', 'data': [r.to_dict() for r in engine.region_service.get_all_regions()]},
            {'type': 'markers', 'data': engine.get_markers()},
            {'type': 'playbackState', 'data': engine.region_service.get_playback_state().to_dict()},
            {'type': 'setlists', 'data': [s.to_dict() for s in engine.setlist_service.get_setlists()]},
        ]

    async def _run(self, func, *args):
        """Run a blocking engine call off the event loop."""
        return await asyncio.to_thread(func, *args)

    async def handle_message(self, data: dict) -> Optional[dict]:
        """Handle incoming WebSocket message."""
        if not isinstance(data, dict):
            return {'type': 'status', 'data': {'error': 'Message must be a JSON object'}}

        msg_type = data.get('type')
        payload = data.get('data') or {}
        setlists = self.engine.setlist_service

        try:
            if msg_type == 'ping':
                return {'type': 'pong', 'data': {}}

            elif msg_type in CONTROL_EVENTS:
                success = await self._run(self.engine.dispatch_event, msg_type, payload)
                return {'type': f'{msg_type}_response', 'data': {'success': success}}

            elif msg_type == 'getStatus':
                return {'type': 'status', 'data': self.engine.get_status()}

            elif msg_type == 'getSystemStats':
                return {'type': 'systemStats', 'data': self.engine.stats_monitor.latest}

            elif msg_type == 'getRegions':
                regions = self.engine.region_service.get_regions()
                return {'type': 'regions', 'data': [r.to_dict() for r in regions]}

            elif msg_type == 'getMarkers':
                return {'type': 'markers', 'data': self.engine.get_markers()}

            elif msg_type == 'getPlaybackState':
                state = self.engine.region_service.get_playback_state()
                return {'type': 'playbackState', 'data': state.to_dict()}

            # === Setlists ===
            elif msg_type == 'getSetlists':
                return {'type': 'setlists', 'data': [s.to_dict() for s in setlists.get_setlists()]}

            elif msg_type == 'createSetlist':
                name = payload.get('name')
                if not name:
                    return {'type': 'createSetlist_response', 'data': {
                        'success': False,
                        'error': 'name is required'
                    }}
                setlist = await self._run(setlists.create_setlist, name)
                return {'type': 'createSetlist_response', 'data': {
                    'success': True,
                    'setlist': setlist.to_dict()
                }}

            elif msg_type == 'updateSetlist':
                setlist_id = payload.get('setlistId')
                name = payload.get('name')
                if not setlist_id or not name:
                    return {'type': 'updateSetlist_response', 'data': {
                        'success': False,
                        'error': 'setlistId and name are required'
                    }}
                setlist = await self._run(setlists.update_setlist, setlist_id, name)
                return {'type': 'updateSetlist_response', 'data': {
                    'success': setlist is not None,
                    'setlist': setlist.to_dict() if setlist else None
                }}

            elif msg_type == 'deleteSetlist':
                setlist_id = payload.get('setlistId')
                if not setlist_id:
                    return {'type': 'deleteSetlist_response', 'data': {
                        'success': False,
                        'error': 'setlistId is required'
                    }}
                success = await self._run(setlists.delete_setlist, setlist_id)
                return {'type': 'deleteSetlist_response', 'data': {
                    'success': success,
                    'setlistId': setlist_id
                }}

            elif msg_type == 'addSetlistItem':
                setlist_id = payload.get('setlistId')
                region_id = payload.get('regionId')
                if not setlist_id or region_id is None:
                    return {'type': 'addSetlistItem_response', 'data': {
                        'success': False,
                        'error': 'setlistId and regionId are required'
                    }}
                item = await self._run(setlists.add_item, setlist_id, region_id, payload.get('position'))
                return {'type': 'addSetlistItem_response', 'data': {
                    'success': item is not None,
                    'item': item.to_dict() if item else None
                }}

            elif msg_type == 'removeSetlistItem':
                setlist_id = payload.get('setlistId')
                item_id = payload.get('itemId')
                if not setlist_id or not item_id:
                    return {'type': 'removeSetlistItem_response', 'data': {
                        'success': False,
                        'error': 'setlistId and itemId are required'
                    }}
                success = await self._run(setlists.remove_item, setlist_id, item_id)
                return {'type': 'removeSetlistItem_response', 'data': {'success': success}}

            elif msg_type == 'moveSetlistItem':
                setlist_id = payload.get('setlistId')
                item_id = payload.get('itemId')
                new_position = payload.get('position')
                if not setlist_id or not item_id or new_position is None:
                    return {'type': 'moveSetlistItem_response', 'data': {
                        'success': False,
                        'error': 'setlistId, itemId, and position are required'
                    }}
                setlist = await self._run(setlists.move_item, setlist_id, item_id, int(new_position))
                return {'type': 'moveSetlistItem_response', 'data': {
                    'success': setlist is not None,
                    'setlist': setlist.to_dict() if setlist else None
                }}

            elif msg_type == 'selectSetlist':
                setlist_id = payload.get('setlistId')
                success = await self._run(self.engine.navigator.select_setlist, setlist_id)
                return {'type': 'selectSetlist_response', 'data': {
                    'success': success,
                    'setlistId': setlist_id
                }}

        except SetlistError as e:
            return {'type': f'{msg_type}_response', 'data': {'success': False, 'error': str(e)}}
        except (TypeError, ValueError) as e:
            return {'type': 'status', 'data': {'error': f"Bad {msg_type} payload: {e}"}}

        return {'type': 'status', 'data': {'error': f"Unknown message type: {msg_type}"}}

    async def start(self) -> None:
        """Start the WebSocket server and serve until closed."""
        self.server = await serve(self.handle_client, self.host, self.port)
        logger.info(f"WebSocket server started on ws://{self.host}:{self.port}")
        await self.server.wait_closed()

    def stop(self) -> None:
        """Stop the WebSocket server."""
        if self.server:
            self.server.close()
