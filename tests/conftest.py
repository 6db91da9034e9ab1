"""
Shared pytest fixtures: scripted controller fakes and wired-up components.
"""
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pytest

from plugin_sender.event_broadcaster import EventBroadcaster
from plugin_sender.hook_registry import HookRegistry
from plugin_sender.job_engine import JobEngine
from plugin_sender.types import ControllerResponse
from plugin_sender.utils.config import PluginSettingsStore, Settings
from plugin_sender.utils.exceptions import GrblErrorException, SerialDisconnectError


class FakeTransport:
    """Controller link that acknowledges every line with ``ok``.

    ``failures`` maps a line (exact text) to the exception raised when it is
    sent; ``on_send`` is called with each line before it is acknowledged.
    """

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.fail_on_call: Dict[int, Exception] = {}
        self.on_send: Optional[Callable[[str], None]] = None
        self.timeouts: List[Optional[float]] = []

    def is_connected(self) -> bool:
        return self.connected

    def send_line(self, line: str, timeout: Optional[float] = None) -> ControllerResponse:
        self.timeouts.append(timeout)
        call_number = len(self.sent) + 1
        if self.on_send is not None:
            self.on_send(line)
        if call_number in self.fail_on_call:
            self.connected = False
            raise self.fail_on_call[call_number]
        if line in self.failures:
            raise self.failures[line]
        self.sent.append(line)
        return ControllerResponse(line, "ok", 0.001)


class FakeSerial:
    """In-memory stand-in for ``serial.Serial`` used by the GRBL transport.

    Every written line is passed to ``responder``; the returned text (if
    any) becomes readable as controller output.
    """

    def __init__(self, port, baudrate=115200, timeout=0.1, write_timeout=None, responder=None):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self.is_open = True
        self.written: List[bytes] = []
        self.responder = responder or (lambda line: "ok")
        self.write_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self._rx = b""
        self._cond = threading.Condition()

    def write(self, data: bytes) -> int:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(bytes(data))
        if data.endswith(b"\n"):
            reply = self.responder(data.decode("ascii").strip())
            if reply:
                self.feed(reply)
        return len(data)

    def feed(self, text: str) -> None:
        """Make controller output available to the reader."""
        with self._cond:
            self._rx += (text.rstrip("\n") + "\n").encode("ascii")
            self._cond.notify_all()

    def read(self, size: int = 1) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        with self._cond:
            if not self._rx and self.is_open:
                self._cond.wait(self.timeout)
            data, self._rx = self._rx[:size], self._rx[size:]
        return data

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._rx = b""

    def reset_output_buffer(self) -> None:
        pass

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    def written_lines(self) -> List[str]:
        return [w.decode("ascii").strip() for w in self.written if w.endswith(b"\n")]


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def broadcaster() -> Iterator[EventBroadcaster]:
    hub = EventBroadcaster(queue_size=100)
    yield hub
    hub.close()


@pytest.fixture
def hooks() -> HookRegistry:
    return HookRegistry(timeout_s=1.0)


@pytest.fixture
def engine(transport, hooks, broadcaster) -> JobEngine:
    return JobEngine(transport, hooks, broadcaster, ack_timeout=1.0)


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    return Settings(str(temp_dir / "settings.json"))


@pytest.fixture
def settings_store(settings: Settings) -> PluginSettingsStore:
    return PluginSettingsStore(settings)


@pytest.fixture
def disconnect_error() -> SerialDisconnectError:
    return SerialDisconnectError("Serial read error: device unplugged")


@pytest.fixture
def grbl_error() -> GrblErrorException:
    return GrblErrorException("error:20 (Unsupported or invalid g-code command) | G5", error_code="20")
