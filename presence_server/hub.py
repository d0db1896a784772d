"""세션 관리와 이벤트 직렬화, 팬아웃 전송."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from .events import Connect, Disconnect, parse_event, welcome_frame
from .protocol import ProtocolError, encode_message
from .registry import SessionRegistry
from .router import PresenceRouter
from .signaling import ANSWER_UNICAST

LOGGER = logging.getLogger(__name__)

# 세션당 아직 쓰지 못한 프레임 수 상한
SEND_QUEUE_SIZE = 1024


class Session:
    """접속 하나.

    전송은 큐에 넣기만 하고 실제 ``sendall`` 은 세션 전용 writer 스레드가
    한다. 상대가 읽지 않아 큐가 ``send_queue_size`` 를 넘으면 ``send`` 가
    ``ConnectionError`` 를 던진다.
    """

    def __init__(self, sid: str, sock: socket.socket, addr: Any, *, send_queue_size: int = SEND_QUEUE_SIZE):
        self.id = sid
        self.socket = sock
        self.addr = addr
        self.alive = True
        self.last_seen = time.monotonic()
        self._outgoing: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=send_queue_size)
        self._close_lock = threading.Lock()
        self._socket_closed = False
        self._writer = threading.Thread(target=self._write_loop, name=f"writer-{sid}", daemon=True)
        self._writer.start()

    def send(self, payload: Dict[str, Any]) -> None:
        data = encode_message(payload)
        if not self.alive:
            raise ConnectionError(f"session {self.id} closed")
        try:
            self._outgoing.put_nowait(data)
        except queue.Full:
            raise ConnectionError(f"send queue full: {self.id}") from None

    def close(self) -> None:
        self.alive = False
        with self._close_lock:
            if self._socket_closed:
                return
            self._socket_closed = True
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()
        try:
            self._outgoing.put_nowait(None)
        except queue.Full:
            # writer 는 닫힌 소켓에 쓰다 실패하고 빠져나온다
            pass

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def idle_for(self, now: float) -> float:
        return now - self.last_seen

    def _write_loop(self) -> None:
        while True:
            data = self._outgoing.get()
            if data is None or not self.alive:
                return
            try:
                self.socket.sendall(data)
            except OSError as exc:
                if self.alive:
                    LOGGER.warning("write failed, closing session %s: %s", self.id, exc)
                self.close()
                return


class ServerHub:
    """연결 관리와 라우터 호출을 담당.

    이벤트는 ``_dispatch_lock`` 안에서 하나씩 끝까지 (레지스트리 변경과
    팬아웃 포함) 처리된다. 팬아웃은 세션 큐에 넣기만 하므로 읽지 않는
    상대가 있어도 잠금을 오래 잡지 않는다. 연결별 순서는 연결당 하나인
    리더 스레드가 보장한다.
    """

    def __init__(
        self,
        *,
        heartbeat_timeout: int = 120,
        answer_routing: str = ANSWER_UNICAST,
        watchdog_interval: float = 10.0,
        send_queue_size: int = SEND_QUEUE_SIZE,
    ) -> None:
        self.heartbeat_timeout = heartbeat_timeout
        self.send_queue_size = send_queue_size
        self.sessions: Dict[str, Session] = {}
        self.registry = SessionRegistry()
        self.router = PresenceRouter(self.registry, self, answer_routing=answer_routing)
        self._sessions_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watchdog_interval = watchdog_interval
        self._watchdog_thread = threading.Thread(target=self._watchdog_loop, daemon=True)
        self._watchdog_thread.start()

    # ---------- 세션 관리 ----------
    def new_session(self, sock: socket.socket, addr: Any) -> Session:
        sid = f"c-{uuid.uuid4().hex}"
        session = Session(sid, sock, addr, send_queue_size=self.send_queue_size)
        with self._dispatch_lock:
            with self._sessions_lock:
                self.sessions[sid] = session
            self.router.dispatch(sid, Connect())
            self._safe_send(session, welcome_frame(sid))
        LOGGER.info("session connected: %s %s", sid, addr)
        return session

    def unregister_session(self, session: Session) -> None:
        with self._sessions_lock:
            removed = self.sessions.pop(session.id, None)
        session.close()
        if removed is None:
            return
        with self._dispatch_lock:
            self.router.dispatch(session.id, Disconnect())
        LOGGER.info("session closed: %s", session.id)

    # ---------- 라우팅 ----------
    def route_message(self, session: Session, message: object) -> None:
        session.touch()
        event = parse_event(message)
        if event is None:
            LOGGER.debug("malformed frame dropped: session=%s frame=%r", session.id, message)
            return
        with self._dispatch_lock:
            try:
                self.router.dispatch(session.id, event)
            except Exception:
                LOGGER.exception("dispatch failed: session=%s event=%s", session.id, type(event).__name__)

    # ---------- Outbox ----------
    def send(self, cid: str, payload: Dict[str, Any]) -> None:
        session = self._get_session(cid)
        if session is None:
            LOGGER.debug("send to unknown session skipped: %s", cid)
            return
        self._safe_send(session, payload)

    def broadcast(self, payload: Dict[str, Any], *, exclude: Optional[str] = None) -> None:
        for session in self._live_sessions():
            if session.id == exclude:
                continue
            self._safe_send(session, payload)

    # ---------- 헬퍼 ----------
    def _safe_send(self, session: Session, payload: Dict[str, object]) -> None:
        if not session.alive:
            return
        try:
            session.send(payload)
        except ConnectionError as exc:
            # 정리는 리더 스레드의 unregister_session 에서
            LOGGER.warning("closing session %s: %s", session.id, exc)
            session.close()
        except ProtocolError as exc:
            LOGGER.error("protocol encode failed: %s", exc)

    def _get_session(self, sid: str) -> Optional[Session]:
        with self._sessions_lock:
            return self.sessions.get(sid)

    def _live_sessions(self) -> List[Session]:
        with self._sessions_lock:
            return list(self.sessions.values())

    # ---------- 워치독 ----------
    def _watchdog_loop(self) -> None:
        while not self._stop_event.wait(self._watchdog_interval):
            self.reap_idle_sessions()

    def reap_idle_sessions(self) -> List[Session]:
        now = time.monotonic()
        stale: List[Session] = []
        for session in self._live_sessions():
            if not session.alive:
                stale.append(session)
            elif self.heartbeat_timeout and session.idle_for(now) > self.heartbeat_timeout:
                stale.append(session)
        for session in stale:
            LOGGER.info("session timeout: %s", session.id)
            self.unregister_session(session)
        return stale

    def shutdown(self) -> None:
        self._stop_event.set()
        self._watchdog_thread.join(timeout=1.0)
        for session in self._live_sessions():
            self.unregister_session(session)


__all__ = [
    "ServerHub",
    "Session",
]
