"""서버와의 TCP 연결을 맡는 네트워크 워커.

리더 스레드에서 받은 이벤트를 Qt 시그널로 내보내므로, 메인 스레드의
객체에 연결하면 처리 순서는 Qt 이벤트 루프가 직렬화한다.
예기치 않게 끊기면 고정 간격으로 정해진 횟수만큼 재접속을 시도하고,
모두 실패하면 ``reconnectFailed`` 를 내보낸 뒤 더 이상 시도하지 않는다.
"""

from __future__ import annotations

import socket
import threading
from typing import Any, Dict, Optional

from PyQt5 import QtCore

from presence_server.protocol import JsonLineFramer, ProtocolError, encode_message

DEFAULT_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 1.0


class NetWorker(QtCore.QObject):
    connected = QtCore.pyqtSignal()
    disconnected = QtCore.pyqtSignal()
    error = QtCore.pyqtSignal(str)
    eventReceived = QtCore.pyqtSignal(dict)
    status = QtCore.pyqtSignal(str)
    reconnectFailed = QtCore.pyqtSignal()

    def __init__(
        self,
        *,
        reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._sock: Optional[socket.socket] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._writer_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._retry_stop = threading.Event()
        self._closing = False
        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._timeout = 5.0

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect_to(self, host: str, port: int, timeout=5.0) -> bool:
        if self._sock is not None:
            self.error.emit("Already connected")
            return True
        self._closing = False
        self._retry_stop.clear()
        self._host, self._port, self._timeout = host, port, timeout
        return self._open()

    def close(self):
        """사용자 요청에 의한 종료. 재접속하지 않는다."""
        self._closing = True
        self._retry_stop.set()
        if self._drop():
            self.disconnected.emit()
            self.status.emit("Disconnected")

    def send_json(self, obj: Dict[str, Any]) -> bool:
        sock = self._sock
        if sock is None:
            self.error.emit("Not connected")
            return False
        try:
            data = encode_message(obj)
        except ProtocolError as e:
            self.error.emit(f"Encode failed: {e}")
            return False
        with self._writer_lock:
            try:
                sock.sendall(data)
            except OSError as e:
                self.error.emit(f"Send failed: {e}")
                return False
        return True

    # ---------- 내부 ----------
    def _open(self) -> bool:
        try:
            self.status.emit(f"Connecting {self._host}:{self._port} ...")
            s = socket.create_connection((self._host, self._port), timeout=self._timeout)
            s.settimeout(None)
        except OSError as e:
            self.error.emit(f"Connect failed: {e}")
            return False
        with self._state_lock:
            self._sock = s
        # 리더가 welcome 을 내보내기 전에 connected 가 먼저 큐에 들어가야 한다
        self.connected.emit()
        self.status.emit("Connected")
        self._reader_thread = threading.Thread(target=self._reader_loop, args=(s,), daemon=True)
        self._reader_thread.start()
        return True

    def _drop(self, expected: Optional[socket.socket] = None) -> bool:
        with self._state_lock:
            sock = self._sock
            if sock is None or (expected is not None and sock is not expected):
                return False
            self._sock = None
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError:
            pass
        return True

    def _reader_loop(self, sock: socket.socket):
        framer = JsonLineFramer()
        try:
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                for msg in framer.feed(chunk):
                    if isinstance(msg, dict):
                        self.eventReceived.emit(msg)
        except ProtocolError as e:
            self.error.emit(f"Protocol error: {e}")
        except OSError as e:
            if not self._closing:
                self.error.emit(f"Reader error: {e}")
        finally:
            if self._drop(sock):
                self.disconnected.emit()
                self.status.emit("Disconnected")
            if not self._closing:
                threading.Thread(target=self._reconnect_loop, daemon=True).start()

    def _reconnect_loop(self):
        for attempt in range(1, self.reconnect_attempts + 1):
            if self._retry_stop.wait(self.reconnect_delay) or self._closing:
                return
            self.status.emit(f"Reconnecting ({attempt}/{self.reconnect_attempts}) ...")
            if self._open():
                return
        self.status.emit("Reconnect failed")
        self.reconnectFailed.emit()


__all__ = [
    "DEFAULT_RECONNECT_ATTEMPTS",
    "DEFAULT_RECONNECT_DELAY",
    "NetWorker",
]
