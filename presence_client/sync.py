"""클라이언트 측 상태 동기화.

서버 이벤트 스트림을 로스터/메시지 로그/타이핑 집합으로 정리하고,
뷰 계층이 호출하는 전송 메서드를 제공한다.

- 로그인은 연결 ID 기준으로 한 번만 보낸다 (재접속으로 ID가 바뀌면 다시)
- 드래그 중에는 자기 아바타의 로컬 위치가 서버 에코보다 우선한다
- 연결이 끊기면 모든 로컬 상태를 비운다 (백로그 없음)
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

from PyQt5 import QtCore

from presence_server.events import (
    EV_ANSWER,
    EV_MESSAGE_NEW,
    EV_OFFER,
    EV_PONG,
    EV_TYPING,
    EV_USERS_UPDATE,
    EV_WELCOME,
    MESSAGE_USER,
    OP_ANSWER,
    OP_LOGIN,
    OP_MESSAGE_SEND,
    OP_MOVE,
    OP_OFFER,
    OP_TYPING,
    utc_now_iso,
)

from .net import DEFAULT_RECONNECT_ATTEMPTS, DEFAULT_RECONNECT_DELAY, NetWorker
from .throttle import PositionThrottle

LOGGER = logging.getLogger(__name__)

STATE_DISCONNECTED = "disconnected"
STATE_CONNECTED = "connected"
STATE_ACTIVE = "active"
STATE_FAILED = "failed"

INITIAL_AREA = (600, 400)


@dataclass
class Bounds:
    """아바타 표시 영역. 좌상단 여백 ``margin_min``, 우하단 여백 ``margin_max``."""

    width: float
    height: float
    margin_min: float = 20
    margin_max: float = 40

    def clamp(self, x: float, y: float) -> Tuple[float, float]:
        x = max(self.margin_min, min(self.width - self.margin_max, x))
        y = max(self.margin_min, min(self.height - self.margin_max, y))
        return x, y


@dataclass
class ClientConfig:
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    move_interval: float = 0.1
    message_log_limit: Optional[int] = 500
    bounds: Optional[Bounds] = field(default=None)


class ClientSynchronizer(QtCore.QObject):
    usersChanged = QtCore.pyqtSignal(list)
    messageReceived = QtCore.pyqtSignal(dict)
    typingChanged = QtCore.pyqtSignal(list)
    connectionStateChanged = QtCore.pyqtSignal(str)
    offerReceived = QtCore.pyqtSignal(str, object, str)
    answerReceived = QtCore.pyqtSignal(str, object)

    def __init__(
        self,
        transport,
        *,
        config: Optional[ClientConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self.transport = transport
        self.config = config or ClientConfig()
        self._rng = rng or random.Random()

        # 상태
        self.username: Optional[str] = None
        self.connection_id: Optional[str] = None
        self.connection_state = STATE_DISCONNECTED
        self._initialized_for: Optional[str] = None
        self._server_users: List[Dict[str, Any]] = []
        self._messages: Deque[Dict[str, Any]] = deque(maxlen=self.config.message_log_limit)
        self._typing: List[str] = []
        self._offered_to: Set[str] = set()
        self._dragging = False
        self._local_position: Optional[Dict[str, float]] = None

        self._flush_timer = QtCore.QTimer(self)
        self._flush_timer.setSingleShot(True)
        self._throttle = PositionThrottle(
            self.config.move_interval,
            self._emit_move,
            clock=clock,
            schedule=self._schedule_flush,
        )
        self._flush_timer.timeout.connect(self._throttle.flush)

        transport.connected.connect(self.on_connected)
        transport.disconnected.connect(self.on_disconnected)
        transport.eventReceived.connect(self.handle_event)
        transport.reconnectFailed.connect(self.on_reconnect_failed)

    def connect_to(self, host: str, port: int) -> bool:
        return self.transport.connect_to(host, port)

    # ---------- 조회 ----------
    @property
    def users(self) -> List[Dict[str, Any]]:
        """렌더링용 로스터. 드래그 중인 자기 아바타는 로컬 위치로 표시."""
        view = [dict(user) for user in self._server_users]
        if self._dragging and self._local_position is not None:
            for user in view:
                if user.get("id") == self.connection_id:
                    user["position"] = dict(self._local_position)
        return view

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return list(self._messages)

    @property
    def typing_users(self) -> List[str]:
        return list(self._typing)

    @property
    def is_initialized(self) -> bool:
        return self._initialized_for is not None and self._initialized_for == self.connection_id

    @property
    def is_dragging(self) -> bool:
        return self._dragging

    def own_record(self) -> Optional[Dict[str, Any]]:
        if self.connection_id is None or self.username is None:
            return None
        for user in self._server_users:
            if user.get("id") == self.connection_id and user.get("name") == self.username:
                return user
        return None

    # ---------- 전송 계층 시그널 ----------
    @QtCore.pyqtSlot()
    def on_connected(self):
        if self.is_initialized:
            return
        self._set_state(STATE_CONNECTED)

    @QtCore.pyqtSlot()
    def on_disconnected(self):
        LOGGER.info("disconnected, clearing local state")
        self._reset()
        self._set_state(STATE_DISCONNECTED)

    @QtCore.pyqtSlot()
    def on_reconnect_failed(self):
        self._set_state(STATE_FAILED)

    @QtCore.pyqtSlot(dict)
    def handle_event(self, ev: Dict[str, Any]):
        et = ev.get("ev")
        if et == EV_WELCOME:
            cid = ev.get("connectionId")
            if not isinstance(cid, str) or not cid:
                return
            if cid != self.connection_id:
                self._initialized_for = None
            self.connection_id = cid
            if self.username:
                self.initialize_user(self.username)

        elif et == EV_USERS_UPDATE:
            users = ev.get("users")
            if not isinstance(users, list):
                return
            self._server_users = [u for u in users if isinstance(u, dict)]
            self.usersChanged.emit(self.users)

        elif et == EV_MESSAGE_NEW:
            message = ev.get("message")
            if not isinstance(message, dict):
                return
            self._messages.append(message)
            self.messageReceived.emit(message)

        elif et == EV_TYPING:
            name = ev.get("name")
            is_typing = ev.get("isTyping")
            if not isinstance(name, str) or not isinstance(is_typing, bool):
                return
            if is_typing and name not in self._typing:
                self._typing.append(name)
            elif not is_typing and name in self._typing:
                self._typing.remove(name)
            else:
                return
            self.typingChanged.emit(self.typing_users)

        elif et == EV_OFFER:
            from_id = ev.get("fromId")
            if not isinstance(from_id, str):
                return
            self.offerReceived.emit(from_id, ev.get("sdp"), str(ev.get("fromName") or ""))

        elif et == EV_ANSWER:
            cid = ev.get("cid")
            # 내가 offer 를 보낸 상대의 answer 만 받는다
            if not isinstance(cid, str) or cid not in self._offered_to:
                return
            self._offered_to.discard(cid)
            self.answerReceived.emit(cid, ev.get("sdp"))

        elif et == EV_PONG:
            pass

    # ---------- 로그인 ----------
    def set_username(self, name: str) -> bool:
        self.username = name
        if self.connection_id is None:
            return False
        return self.initialize_user(name)

    def initialize_user(self, name: str) -> bool:
        """현재 연결 ID로 아직 로그인하지 않았으면 ``login`` 을 한 번 보낸다."""
        cid = self.connection_id
        if cid is None or not name.strip():
            return False
        if self._initialized_for == cid:
            return False
        self.username = name
        width, height = INITIAL_AREA
        user = {
            "id": cid,
            "name": name,
            "status": "online",
            "position": {
                "x": self._rng.randrange(width),
                "y": self._rng.randrange(height),
            },
            "color": f"hsl({self._rng.randrange(360)}, 70%, 60%)",
            "avatar": f"https://api.dicebear.com/7.x/bottts/svg?seed={quote(name)}",
        }
        if not self.transport.send_json({"op": OP_LOGIN, "user": user}):
            return False
        self._initialized_for = cid
        self._set_state(STATE_ACTIVE)
        return True

    # ---------- 전송 ----------
    def send_message(self, content: str) -> bool:
        if not content.strip() or not self.is_initialized:
            return False
        draft = {
            "type": MESSAGE_USER,
            "sender": self.username,
            "content": content,
            "timestamp": utc_now_iso(),
        }
        if not self.transport.send_json({"op": OP_MESSAGE_SEND, "message": draft}):
            return False
        # 메시지를 보냈으면 타이핑 표시 해제
        self.transport.send_json({"op": OP_TYPING, "isTyping": False})
        return True

    def send_typing_update(self, is_typing: bool) -> bool:
        if not self.is_initialized:
            return False
        return self.transport.send_json({"op": OP_TYPING, "isTyping": bool(is_typing)})

    def begin_drag(self) -> bool:
        own = self.own_record()
        if own is None or not self.is_initialized:
            return False
        position = own.get("position") or {}
        self._dragging = True
        self._local_position = {"x": position.get("x", 0), "y": position.get("y", 0)}
        return True

    def send_position(self, x: float, y: float) -> bool:
        """드래그 중이면 로컬에 즉시 반영하고 전송은 간격 제한, 아니면 바로 전송."""
        if self.own_record() is None or not self.is_initialized:
            return False
        if self.config.bounds is not None:
            x, y = self.config.bounds.clamp(x, y)
        position = {"x": x, "y": y}
        if not self._dragging:
            return self._emit_move(position)
        self._local_position = position
        self.usersChanged.emit(self.users)
        self._throttle.push(position)
        return True

    def end_drag(self) -> bool:
        """드래그 종료. 최종 위치는 간격과 무관하게 항상 전송."""
        if not self._dragging:
            return False
        self._flush_timer.stop()
        final = self._local_position
        self._dragging = False
        self._local_position = None
        if final is not None:
            self._throttle.finish(final)
        self.usersChanged.emit(self.users)
        return True

    def send_offer(self, sdp: Any) -> List[str]:
        """로스터의 다른 모든 사용자에게 offer 를 보내고 대상 ID 목록을 반환."""
        if not self.is_initialized:
            return []
        targets: List[str] = []
        for user in self._server_users:
            target_id = user.get("id")
            if not isinstance(target_id, str) or target_id == self.connection_id:
                continue
            if self.transport.send_json({"op": OP_OFFER, "targetId": target_id, "sdp": sdp}):
                self._offered_to.add(target_id)
                targets.append(target_id)
        return targets

    def send_answer(self, sdp: Any) -> bool:
        if not self.is_initialized:
            return False
        return self.transport.send_json({"op": OP_ANSWER, "sdp": sdp})

    def logout(self):
        self.username = None
        self.transport.close()

    # ---------- 내부 ----------
    def _emit_move(self, position: Dict[str, float]) -> bool:
        return self.transport.send_json({"op": OP_MOVE, "position": position})

    def _schedule_flush(self, delay: float):
        self._flush_timer.start(max(0, int(delay * 1000)))

    def _set_state(self, state: str):
        if state == self.connection_state:
            return
        self.connection_state = state
        self.connectionStateChanged.emit(state)

    def _reset(self):
        self._flush_timer.stop()
        self._throttle.cancel()
        self.connection_id = None
        self._initialized_for = None
        self._server_users = []
        self._messages.clear()
        self._typing = []
        self._offered_to.clear()
        self._dragging = False
        self._local_position = None
        self.usersChanged.emit([])
        self.typingChanged.emit([])


def build_client(config: Optional[ClientConfig] = None) -> ClientSynchronizer:
    """설정에 맞춘 NetWorker 와 동기화 객체를 묶어서 생성."""
    config = config or ClientConfig()
    worker = NetWorker(
        reconnect_attempts=config.reconnect_attempts,
        reconnect_delay=config.reconnect_delay,
    )
    client = ClientSynchronizer(worker, config=config)
    worker.setParent(client)
    return client


__all__ = [
    "Bounds",
    "ClientConfig",
    "ClientSynchronizer",
    "build_client",
    "STATE_ACTIVE",
    "STATE_CONNECTED",
    "STATE_DISCONNECTED",
    "STATE_FAILED",
]
