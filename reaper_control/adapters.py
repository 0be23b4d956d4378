"""
REAPER Adapters
Thin transports to REAPER's web interface (HTTP) and OSC control surface.

Both speak the web interface's text protocol: a command such as
"TRANSPORT", "REGION", "1007" or "SET/POS/12.5" goes in, tab-separated
lines come out.
"""

import itertools
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import ThreadingOSCUDPServer
from pythonosc.udp_client import SimpleUDPClient

from .config import ReaperConfig

logger = logging.getLogger(__name__)

DEFAULT_TRANSPORT = "TRANSPORT\t0\t0\t0\t0:00\t1.1.00"
EMPTY_REGION_LIST = "REGION_LIST\nREGION_LIST_END"

_ACTION_COMMAND = re.compile(r'^\d+$')
_SET_POS_PREFIX = 'SET/POS/'


class ReaperConnectionError(Exception):
    """Raised when REAPER cannot be reached or rejects a request."""
    pass


def _wrap_list(response: str, line_prefix: str, list_name: str) -> str:
    lines = [line for line in response.splitlines()
             if line.startswith(line_prefix + '\t')]
    return '\n'.join([list_name] + lines + [f"{list_name}_END"])


class ReaperWebAdapter:
    """Sends commands to REAPER's built-in web interface over HTTP."""

    def __init__(self, config: ReaperConfig):
        self.config = config
        self.base_url = f"{config.protocol}://{config.host}:{config.port}/_/"
        self._session: Optional[requests.Session] = None
        # requests.Session is shared between polling threads
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open the HTTP session and probe REAPER with a TRANSPORT request."""
        self._session = requests.Session()
        response = self._request("TRANSPORT")
        logger.info(f"Connected to REAPER web interface at {self.base_url}")
        logger.debug(f"Initial transport state: {response.strip()}")

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def send(self, command: str) -> str:
        command = command.lstrip('/')

        if command == 'REGION':
            return _wrap_list(self._request(command), 'REGION', 'REGION_LIST')
        if command == 'MARKER':
            return _wrap_list(self._request(command), 'MARKER', 'MARKER_LIST')
        if command.startswith(_SET_POS_PREFIX) or _ACTION_COMMAND.match(command):
            self._request(command)
            return ''
        return self._request(command)

    def _request(self, command: str) -> str:
        url = self.base_url + command
        with self._lock:
            if self._session is None:
                self._session = requests.Session()
            try:
                resp = self._session.get(url, timeout=self.config.connection_timeout)
                resp.raise_for_status()
            except requests.RequestException as e:
                raise ReaperConnectionError(f"Request to {url} failed: {e}") from e
        return resp.text


@dataclass
class _PendingReply:
    command: str
    event: threading.Event = field(default_factory=threading.Event)
    response: Optional[str] = None


class ReaperOscAdapter:
    """
    Sends commands to REAPER's OSC control surface.

    Actions and seeks are fire-and-forget. Queries wait for REAPER to echo
    a message back on the local port and fall back to neutral defaults
    when nothing arrives.
    """

    REGION_TIMEOUT = 2.0
    TRANSPORT_TIMEOUT = 1.0
    GENERIC_TIMEOUT = 1.0

    def __init__(self, config: ReaperConfig):
        self.config = config
        self.client = SimpleUDPClient(config.host, config.osc_remote_port)
        self._server: Optional[ThreadingOSCUDPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._pending: Dict[int, _PendingReply] = {}
        self._pending_lock = threading.Lock()
        self._ids = itertools.count(1)

    def connect(self) -> None:
        """Start listening for replies on the local OSC port."""
        dispatcher = Dispatcher()
        dispatcher.set_default_handler(self._handle_message)

        try:
            self._server = ThreadingOSCUDPServer(("127.0.0.1", self.config.osc_local_port), dispatcher)
        except OSError as e:
            raise ReaperConnectionError(
                f"Could not listen for OSC on port {self.config.osc_local_port}: {e}") from e

        self._server_thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._server_thread.start()
        logger.info(f"OSC adapter sending to {self.config.host}:{self.config.osc_remote_port}, "
                    f"listening on {self.config.osc_local_port}")

    def close(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None

    def send(self, command: str) -> str:
        command = command.lstrip('/')

        if _ACTION_COMMAND.match(command):
            self.client.send_message('/action', int(command))
            return ''

        if command.startswith(_SET_POS_PREFIX):
            try:
                position = float(command[len(_SET_POS_PREFIX):])
            except ValueError:
                logger.warning(f"Bad seek command {command!r}, going to project start")
                self.client.send_message('/action', 40755)
                return ''
            self.client.send_message('/time', position)
            return ''

        if command == 'REGION':
            return self._query(command, self.REGION_TIMEOUT, EMPTY_REGION_LIST)
        if command == 'TRANSPORT':
            return self._query(command, self.TRANSPORT_TIMEOUT, DEFAULT_TRANSPORT)
        return self._query(command, self.GENERIC_TIMEOUT, '')

    def _query(self, command: str, timeout: float, default: str) -> str:
        command_id = next(self._ids)
        pending = _PendingReply(command)
        with self._pending_lock:
            self._pending[command_id] = pending

        try:
            self.client.send_message('/' + command, [])
            if pending.event.wait(timeout):
                return pending.response or ''
            logger.debug(f"No OSC reply for {command}, using default")
            return default
        finally:
            with self._pending_lock:
                self._pending.pop(command_id, None)

    def _handle_message(self, address: str, *args) -> None:
        if address in ('/REGION_LIST', '/REGION'):
            self._resolve(lambda cmd: cmd == 'REGION', format_region_list(args))
        elif address == '/TRANSPORT':
            self._resolve(lambda cmd: cmd == 'TRANSPORT', format_transport(args))
        else:
            root = address.lstrip('/').split('/')[0]
            reply = '\t'.join([address] + [str(a) for a in args])
            self._resolve(lambda cmd: cmd.split('/')[0] == root, reply)

    def _resolve(self, matches, response: str) -> None:
        with self._pending_lock:
            for pending in self._pending.values():
                if not pending.event.is_set() and matches(pending.command):
                    pending.response = response
                    pending.event.set()
                    return
        logger.debug(f"Unsolicited OSC reply: {response[:80]}")


def format_region_list(args) -> str:
    """Convert OSC region args into REGION_LIST text."""
    lines: List[str] = ['REGION_LIST']
    for arg in args:
        if isinstance(arg, str) and arg.startswith('REGION'):
            lines.extend(line for line in arg.splitlines() if line.startswith('REGION\t'))
    lines.append('REGION_LIST_END')
    return '\n'.join(lines)


def format_transport(args) -> str:
    defaults = [0, 0, 0, '0:00', '1.1.00']
    values = list(args[:5]) + defaults[len(args[:5]):]
    return 'TRANSPORT\t' + '\t'.join(str(v) for v in values)


def create_adapter(config: ReaperConfig):
    """Build the adapter selected by config.adapter."""
    if config.adapter == 'osc':
        return ReaperOscAdapter(config)
    return ReaperWebAdapter(config)
