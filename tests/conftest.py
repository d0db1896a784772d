from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest
from PyQt5 import QtCore

from presence_server.events import Connect, Disconnect, Login, UserRecord, parse_event
from presence_server.registry import SessionRegistry
from presence_server.router import PresenceRouter

FIXED_TS = "2026-01-01T00:00:00.000Z"


class RecordingOutbox:
    """열린 연결 목록을 들고 전달된 프레임을 순서대로 기록."""

    def __init__(self) -> None:
        self.connections: List[str] = []
        self.deliveries: List[Tuple[str, Dict[str, Any]]] = []

    def send(self, cid: str, payload: Dict[str, Any]) -> None:
        if cid in self.connections:
            self.deliveries.append((cid, payload))

    def broadcast(self, payload: Dict[str, Any], *, exclude: Optional[str] = None) -> None:
        for cid in self.connections:
            if cid != exclude:
                self.deliveries.append((cid, payload))

    def received(self, cid: str, ev: Optional[str] = None) -> List[Dict[str, Any]]:
        return [p for c, p in self.deliveries if c == cid and (ev is None or p["ev"] == ev)]

    def clear(self) -> None:
        self.deliveries.clear()


class RouterHarness:
    def __init__(self, router: PresenceRouter, outbox: RecordingOutbox) -> None:
        self.router = router
        self.outbox = outbox
        self.registry = router.registry

    def connect(self, cid: str) -> None:
        self.outbox.connections.append(cid)
        self.router.dispatch(cid, Connect())

    def login(self, cid: str, name: str, **fields: Any) -> None:
        payload = {"name": name, **fields}
        self.router.dispatch(cid, Login(UserRecord.from_payload(payload)))

    def frame(self, cid: str, frame: Dict[str, Any]) -> None:
        event = parse_event(frame)
        assert event is not None, frame
        self.router.dispatch(cid, event)

    def disconnect(self, cid: str) -> None:
        self.outbox.connections.remove(cid)
        self.router.dispatch(cid, Disconnect())


@pytest.fixture
def outbox() -> RecordingOutbox:
    return RecordingOutbox()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def router(registry, outbox) -> PresenceRouter:
    return PresenceRouter(registry, outbox, clock=lambda: FIXED_TS)


@pytest.fixture
def harness(router, outbox) -> RouterHarness:
    return RouterHarness(router, outbox)


@pytest.fixture(scope="session")
def qapp():
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


class FakeTransport(QtCore.QObject):
    connected = QtCore.pyqtSignal()
    disconnected = QtCore.pyqtSignal()
    eventReceived = QtCore.pyqtSignal(dict)
    reconnectFailed = QtCore.pyqtSignal()

    def __init__(self) -> None:
        super().__init__()
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.closed = 0

    def send_json(self, obj: Dict[str, Any]) -> bool:
        if not self.open:
            return False
        self.sent.append(obj)
        return True

    def close(self) -> None:
        self.closed += 1
        self.open = False
        self.disconnected.emit()

    def connect_to(self, host: str, port: int) -> bool:
        self.open = True
        self.connected.emit()
        return True

    def ops(self, op: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if op is None or m["op"] == op]


@pytest.fixture
def transport(qapp) -> FakeTransport:
    return FakeTransport()
