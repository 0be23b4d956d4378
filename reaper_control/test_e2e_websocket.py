"""
End-to-end test of the engine and WebSocket server against a fake REAPER.

Tests the complete flow:
1. Client connects and receives the initial state
2. Builds a setlist over the socket
3. Selects it and navigates
4. Checks the control message error paths
"""

import asyncio
import json

import pytest
from websockets.asyncio.client import connect

from reaper_control.config import AppConfig
from reaper_control.main import ReaperControlEngine
from reaper_control.reaper import ReaperClient
from reaper_control.server import WebSocketServer

from .conftest import FakeReaperAdapter, SONGS


@pytest.fixture
def engine(tmp_path):
    config = AppConfig()
    config.midi.enabled = False
    config.storage_dir = str(tmp_path)
    config.navigation.settle_delay = 0
    config.navigation.seek_delay = 0
    adapter = FakeReaperAdapter(SONGS)
    engine = ReaperControlEngine(config, client=ReaperClient(adapter))
    engine.adapter = adapter
    return engine


async def recv_type(ws, msg_type, timeout=2.0):
    """Read messages until one of the given type arrives."""
    async def _recv():
        while True:
            message = json.loads(await ws.recv())
            if message['type'] == msg_type:
                return message
    return await asyncio.wait_for(_recv(), timeout)


async def request(ws, msg_type, data=None, reply=None):
    await ws.send(json.dumps({'type': msg_type, 'data': data or {}}))
    return await recv_type(ws, reply or f'{msg_type}_response')


def test_websocket_session(engine):
    async def scenario():
        engine._event_loop = asyncio.get_running_loop()
        engine.start()
        server = WebSocketServer(engine, '127.0.0.1', 0)
        task = asyncio.create_task(server.start())
        try:
            while server.server is None:
                await asyncio.sleep(0.01)
            port = list(server.server.sockets)[0].getsockname()[1]

            async with connect(f"ws://127.0.0.1:{port}") as ws:
                regions = await recv_type(ws, 'regions')
                assert [r['name'] for r in regions['data']] == ['Intro', 'Song A', 'Song B', 'Outro']
                state = await recv_type(ws, 'playbackState')
                assert state['data']['isPlaying'] is False
                await recv_type(ws, 'setlists')

                pong = await request(ws, 'ping', reply='pong')
                assert pong['data'] == {}

                created = await request(ws, 'createSetlist', {'name': 'Friday'})
                setlist_id = created['data']['setlist']['id']

                for region_id in (3, 2):
                    added = await request(ws, 'addSetlistItem',
                                          {'setlistId': setlist_id, 'regionId': region_id})
                    assert added['data']['success']

                selected = await request(ws, 'selectSetlist', {'setlistId': setlist_id})
                assert selected['data']['success']
                assert engine.adapter.seeks()[-1] == pytest.approx(20.001)

                moved = await request(ws, 'nextRegion')
                assert moved['data']['success']
                assert engine.adapter.seeks()[-1] == pytest.approx(10.001)

                status = await request(ws, 'getStatus', reply='status')
                assert status['data']['projectId'] == engine.region_service.project_id
                assert status['data']['clients'] == 1
                assert status['data']['playbackState']['selectedSetlistId'] == setlist_id
                assert status['data']['systemStats']['cpu']['cores'] >= 1

                stats = await request(ws, 'getSystemStats', reply='systemStats')
                assert stats['data']['memory']['used'] > 0

                await ws.send("{oops")
                error = await recv_type(ws, 'status')
                assert error['data']['error'] == 'Invalid JSON'
        finally:
            server.stop()
            await asyncio.wait_for(task, 2.0)
            engine.stop()

    asyncio.run(scenario())


def test_message_errors(engine):
    engine.refresh_project()
    server = WebSocketServer(engine)

    async def send(msg_type, data=None):
        return await server.handle_message({'type': msg_type, 'data': data or {}})

    async def scenario():
        unknown = await send('launchRockets')
        assert unknown == {'type': 'status', 'data': {'error': 'Unknown message type: launchRockets'}}

        missing = await send('createSetlist')
        assert missing['data'] == {'success': False, 'error': 'name is required'}

        created = await send('createSetlist', {'name': 'Friday'})
        setlist_id = created['data']['setlist']['id']

        bad_region = await send('addSetlistItem', {'setlistId': setlist_id, 'regionId': 99})
        assert bad_region['type'] == 'addSetlistItem_response'
        assert bad_region['data']['success'] is False

        bad_position = await send('moveSetlistItem',
                                  {'setlistId': setlist_id, 'itemId': 'x', 'position': 'first'})
        assert bad_position['type'] == 'status'

        deleted = await send('deleteSetlist', {'setlistId': setlist_id})
        assert deleted['data'] == {'success': True, 'setlistId': setlist_id}

        toggled = await send('toggleAutoplay')
        assert toggled['data']['success']
        assert engine.region_service.get_playback_state().autoplay_enabled is False

        regions = await send('getRegions')
        assert len(regions['data']) == 4

        assert (await server.handle_message(['not', 'a', 'dict']))['type'] == 'status'

    asyncio.run(scenario())


def test_dispatch_event(engine):
    engine.refresh_project()
    assert engine.dispatch_event('seekToRegion')
    assert engine.adapter.seeks() == [pytest.approx(0.001)]

    assert engine.dispatch_event('seekToPosition', {'position': 12.0})
    assert engine.adapter.seeks()[-1] == 12.0

    assert engine.dispatch_event('toggleCountIn')
    assert engine.region_service.get_playback_state().count_in_enabled

    assert engine.dispatch_event('refreshRegions')
    assert not engine.dispatch_event('selfDestruct')


def test_markers_hide_commands(tmp_path):
    from reaper_control.models import Marker

    config = AppConfig()
    config.midi.enabled = False
    config.storage_dir = str(tmp_path)
    adapter = FakeReaperAdapter(SONGS, [Marker(1, '!bpm:100', 1.0), Marker(2, 'Drop', 5.0)])
    engine = ReaperControlEngine(config, client=ReaperClient(adapter))
    engine.refresh_project()

    assert [m['name'] for m in engine.get_markers()] == ['Drop']
