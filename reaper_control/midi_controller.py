"""MIDI controller input: maps note-on messages to control events."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import mido

from .config import MidiConfig

logger = logging.getLogger(__name__)


@dataclass
class MidiActivity:
    """A mapped note received from a controller."""
    note: int
    velocity: int
    channel: int
    event: str
    port: str

    def to_dict(self) -> dict:
        return {
            'note': self.note,
            'velocity': self.velocity,
            'channel': self.channel,
            'event': self.event,
            'port': self.port,
        }


class MidiController:
    """
    Listens on MIDI input ports and dispatches mapped notes.

    Ports are rescanned periodically so controllers can be plugged in or
    removed while running.
    """

    def __init__(self, config: MidiConfig, dispatch: Callable[[str], None]):
        self.config = config
        self.dispatch = dispatch
        self.note_mapping: Dict[int, str] = dict(config.note_mapping)

        self._ports: Dict[str, mido.ports.BaseInput] = {}
        self._ports_lock = threading.Lock()
        self._activity_callbacks: List[Callable[[MidiActivity], None]] = []

        self._running = False
        self._stop_event = threading.Event()
        self._scan_thread: Optional[threading.Thread] = None

    @property
    def connected_ports(self) -> List[str]:
        with self._ports_lock:
            return list(self._ports)

    def add_activity_callback(self, callback: Callable[[MidiActivity], None]) -> None:
        self._activity_callbacks.append(callback)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self.check_devices()
        self._scan_thread = threading.Thread(target=self._scan_loop, daemon=True, name="midi-scan")
        self._scan_thread.start()
        logger.info(f"MIDI controller started, rescanning every {self.config.device_poll_interval}s")

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._scan_thread:
            self._scan_thread.join(timeout=2.0)
            self._scan_thread = None

        with self._ports_lock:
            names = list(self._ports)
        for name in names:
            self._close_port(name)
        logger.info("MIDI controller stopped")

    def _wanted(self, name: str) -> bool:
        if self.config.device_name is None:
            return True
        return self.config.device_name.lower() in name.lower()

    def check_devices(self) -> None:
        """Open newly attached ports and close ones that disappeared."""
        try:
            available = [name for name in mido.get_input_names() if self._wanted(name)]
        except (OSError, IOError) as e:
            logger.error(f"Could not list MIDI inputs: {e}")
            return

        with self._ports_lock:
            connected = set(self._ports)

        for name in available:
            if name not in connected:
                self._open_port(name)

        for name in connected - set(available):
            logger.info(f"MIDI device disconnected: {name}")
            self._close_port(name)

    def _open_port(self, name: str) -> None:
        try:
            port = mido.open_input(name, callback=lambda msg, port_name=name: self.handle_message(msg, port_name))
        except (OSError, IOError) as e:
            logger.error(f"Could not open MIDI input {name}: {e}")
            return
        with self._ports_lock:
            self._ports[name] = port
        logger.info(f"Listening on MIDI input: {name}")

    def _close_port(self, name: str) -> None:
        with self._ports_lock:
            port = self._ports.pop(name, None)
        if port is None:
            return
        try:
            port.close()
        except (OSError, IOError) as e:
            logger.error(f"Error closing MIDI input {name}: {e}")

    def _scan_loop(self) -> None:
        while not self._stop_event.wait(self.config.device_poll_interval):
            self.check_devices()

    def handle_message(self, msg: mido.Message, port_name: str = "") -> Optional[str]:
        """Dispatch a note-on if it is mapped. Returns the event name."""
        # note_on with velocity 0 is a note-off
        if msg.type != 'note_on' or msg.velocity == 0:
            return None
        if self.config.channel is not None and msg.channel != self.config.channel:
            return None

        event = self.note_mapping.get(msg.note)
        if event is None:
            logger.debug(f"Unmapped MIDI note {msg.note} on channel {msg.channel}")
            return None

        logger.info(f"MIDI note {msg.note} -> {event}")
        activity = MidiActivity(msg.note, msg.velocity, msg.channel, event, port_name)
        for callback in self._activity_callbacks:
            try:
                callback(activity)
            except Exception as e:
                logger.error(f"MIDI activity callback error: {e}")

        try:
            self.dispatch(event)
        except Exception as e:
            logger.exception(f"Error handling MIDI event {event}: {e}")
        return event

    @staticmethod
    def list_ports() -> dict:
        """List available MIDI ports."""
        return {
            'inputs': mido.get_input_names(),
            'outputs': mido.get_output_names()
        }
