"""접속/채팅 이벤트 라우팅과 연결별 상태 머신.

연결 상태는 ``CONNECTED`` (로그인 전) → ``ACTIVE`` (로그인 후) → ``CLOSED``.
모든 이벤트는 ``PresenceRouter.dispatch`` 한 곳으로 들어오며, 한 이벤트의
레지스트리 변경과 팬아웃이 끝난 뒤에야 다음 이벤트가 처리된다고 가정한다
(직렬화는 호출자 책임).
"""

from __future__ import annotations

import enum
import itertools
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from .events import (
    Answer,
    Connect,
    Disconnect,
    InboundEvent,
    Login,
    MESSAGE_SYSTEM,
    MESSAGE_USER,
    Message,
    Move,
    Offer,
    Ping,
    SendMessage,
    Typing,
    UserRecord,
    message_frame,
    pong_frame,
    typing_frame,
    users_frame,
    utc_now_iso,
)
from .registry import SessionRegistry
from .signaling import ANSWER_UNICAST, SignalingRelay

LOGGER = logging.getLogger(__name__)

JOIN_TEMPLATE = "{name} が入室しました"
LEAVE_TEMPLATE = "{name} が退室しました"


class Outbox(Protocol):
    """라우터가 프레임을 내보내는 통로."""

    def send(self, cid: str, payload: Dict[str, Any]) -> None:
        ...

    def broadcast(self, payload: Dict[str, Any], *, exclude: Optional[str] = None) -> None:
        ...


class ConnectionState(enum.Enum):
    CONNECTED = "connected"
    ACTIVE = "active"
    CLOSED = "closed"


class PresenceRouter:
    """수신 이벤트를 검사하고 전체/발신자 제외/단일 대상으로 팬아웃."""

    def __init__(
        self,
        registry: SessionRegistry,
        outbox: Outbox,
        *,
        answer_routing: str = ANSWER_UNICAST,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.registry = registry
        self.outbox = outbox
        self.relay = SignalingRelay(
            registry, outbox, answer_routing=answer_routing, is_connected=self.is_open
        )
        self._clock = clock
        self._message_ids = itertools.count(1)
        self._states: Dict[str, ConnectionState] = {}

    def state_of(self, cid: str) -> ConnectionState:
        return self._states.get(cid, ConnectionState.CLOSED)

    def is_open(self, cid: str) -> bool:
        return self.state_of(cid) is not ConnectionState.CLOSED

    def next_message_id(self) -> str:
        return f"msg-{next(self._message_ids)}"

    # ---------- 진입점 ----------
    def dispatch(self, cid: str, event: InboundEvent) -> None:
        if isinstance(event, Connect):
            self._handle_connect(cid)
            return

        state = self.state_of(cid)
        if state is ConnectionState.CLOSED:
            LOGGER.debug("event on closed connection dropped: %s %s", cid, type(event).__name__)
            return

        if isinstance(event, Disconnect):
            self._handle_disconnect(cid)
        elif isinstance(event, Ping):
            self.outbox.send(cid, pong_frame())
        elif isinstance(event, Login):
            self._handle_login(cid, event)
        elif state is not ConnectionState.ACTIVE:
            LOGGER.debug("event before login dropped: %s %s", cid, type(event).__name__)
        elif isinstance(event, SendMessage):
            self._handle_message(cid, event)
        elif isinstance(event, Move):
            self._handle_move(cid, event)
        elif isinstance(event, Typing):
            self._handle_typing(cid, event)
        elif isinstance(event, Offer):
            self.relay.offer(cid, event.target_id, event.sdp)
        elif isinstance(event, Answer):
            self.relay.answer(cid, event.sdp)
        else:
            LOGGER.debug("unhandled event dropped: %s %r", cid, event)

    # ---------- 핸들러 ----------
    def _handle_connect(self, cid: str) -> None:
        if cid in self._states:
            LOGGER.warning("connection id reused: %s", cid)
            return
        self._states[cid] = ConnectionState.CONNECTED

    def _handle_login(self, cid: str, event: Login) -> None:
        # 클라이언트가 보낸 id 는 무시하고 연결 ID로 고정
        record = event.user
        self.registry.put(cid, record)
        self._states[cid] = ConnectionState.ACTIVE

        self._announce(JOIN_TEMPLATE.format(name=record.name))
        self._broadcast_users()
        LOGGER.info("login: %s (%s) users=%d", record.name, cid, len(self.registry))

    def _handle_message(self, cid: str, event: SendMessage) -> None:
        record = self.registry.get(cid)
        if record is None:
            return
        message = Message(
            id=self.next_message_id(),
            type=MESSAGE_USER,
            sender=record.name,
            content=event.draft.content,
            timestamp=event.draft.timestamp or self._clock(),
        )
        self.outbox.broadcast(message_frame(message))
        LOGGER.debug("message %s from %s", message.id, record.name)

    def _handle_move(self, cid: str, event: Move) -> None:
        def apply(record: UserRecord) -> None:
            record.position = event.position

        record = self.registry.update(cid, apply)
        if record is None:
            return
        self._broadcast_users()
        LOGGER.debug("move: %s to (%s, %s)", record.name, event.position.x, event.position.y)

    def _handle_typing(self, cid: str, event: Typing) -> None:
        record = self.registry.get(cid)
        if record is None:
            return
        self.outbox.broadcast(typing_frame(cid, record.name, event.is_typing), exclude=cid)

    def _handle_disconnect(self, cid: str) -> None:
        # 닫힌 연결은 상태 맵에서 지운다 (state_of 가 CLOSED 로 응답)
        self._states.pop(cid, None)
        self.relay.forget(cid)
        record = self.registry.remove(cid)
        if record is None:
            LOGGER.debug("disconnect before login: %s", cid)
            return
        self._announce(LEAVE_TEMPLATE.format(name=record.name))
        self._broadcast_users()
        LOGGER.info("logout: %s (%s) users=%d", record.name, cid, len(self.registry))

    # ---------- 헬퍼 ----------
    def _announce(self, content: str) -> None:
        message = Message(
            id=self.next_message_id(),
            type=MESSAGE_SYSTEM,
            content=content,
            timestamp=self._clock(),
        )
        self.outbox.broadcast(message_frame(message))

    def _broadcast_users(self) -> None:
        self.outbox.broadcast(users_frame(self.registry.snapshot()))


__all__ = [
    "ConnectionState",
    "JOIN_TEMPLATE",
    "LEAVE_TEMPLATE",
    "Outbox",
    "PresenceRouter",
]
