"""클라이언트/서버 간 이벤트 어휘와 페이로드 형태.

수신 프레임은 ``op`` 키, 송신 프레임은 ``ev`` 키로 이벤트 이름을 싣는다.
``parse_event`` 는 수신 프레임을 아래 이벤트 dataclass 중 하나로 바꾸고,
필수 필드가 빠졌거나 타입이 맞지 않으면 ``None`` 을 돌려준다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

# 클라이언트 → 서버
OP_LOGIN = "login"
OP_MESSAGE_SEND = "message:send"
OP_MOVE = "move"
OP_TYPING = "typing"
OP_OFFER = "offer"
OP_ANSWER = "answer"
OP_PING = "ping"

# 서버 → 클라이언트
EV_WELCOME = "welcome"
EV_MESSAGE_NEW = "message:new"
EV_USERS_UPDATE = "users:update"
EV_TYPING = "typing"
EV_OFFER = "offer"
EV_ANSWER = "answer"
EV_PONG = "pong"

USER_STATUSES = ("online", "offline", "away")
MESSAGE_USER = "user"
MESSAGE_SYSTEM = "system"


def utc_now_iso() -> str:
    """ISO-8601 (UTC, 밀리초) 타임스탬프."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class Position:
    x: float = 0
    y: float = 0

    @classmethod
    def from_payload(cls, data: object) -> Optional["Position"]:
        if not isinstance(data, dict):
            return None
        x, y = data.get("x"), data.get("y")
        if not _is_number(x) or not _is_number(y):
            return None
        return cls(x, y)

    def to_payload(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class UserRecord:
    """접속 중인 사용자 한 명의 상태."""

    id: str
    name: str
    status: str = "online"
    position: Position = field(default_factory=Position)
    color: str = ""
    avatar: str = ""

    @classmethod
    def from_payload(cls, data: object) -> Optional["UserRecord"]:
        """로그인 페이로드를 해석. 이름이 없으면 ``None``.

        ``id`` 는 클라이언트가 보낸 값을 그대로 두되, 서버는 로그인 처리 시
        반드시 연결 ID로 덮어쓴다.
        """
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        status = data.get("status", "online")
        if status not in USER_STATUSES:
            status = "online"
        position = Position()
        if "position" in data:
            position = Position.from_payload(data["position"])
            if position is None:
                return None
        color = data.get("color", "")
        avatar = data.get("avatar", "")
        return cls(
            id=str(data.get("id") or ""),
            name=name,
            status=status,
            position=position,
            color=color if isinstance(color, str) else "",
            avatar=avatar if isinstance(avatar, str) else "",
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "position": self.position.to_payload(),
            "color": self.color,
            "avatar": self.avatar,
        }


@dataclass
class Message:
    id: str
    type: str
    content: str
    timestamp: str
    sender: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.sender is not None:
            payload["sender"] = self.sender
        return payload


@dataclass
class MessageDraft:
    """``message:send`` 로 들어온 메시지 (id 없음)."""

    content: str
    timestamp: Optional[str] = None

    @classmethod
    def from_payload(cls, data: object) -> Optional["MessageDraft"]:
        if not isinstance(data, dict):
            return None
        content = data.get("content")
        if not isinstance(content, str):
            return None
        timestamp = data.get("timestamp")
        return cls(content, timestamp if isinstance(timestamp, str) and timestamp else None)


# ---------- 수신 이벤트 (tagged union) ----------
@dataclass
class Login:
    user: UserRecord


@dataclass
class SendMessage:
    draft: MessageDraft


@dataclass
class Move:
    position: Position


@dataclass
class Typing:
    is_typing: bool


@dataclass
class Offer:
    target_id: str
    sdp: Any


@dataclass
class Answer:
    sdp: Any


@dataclass
class Ping:
    pass


# 전송 계층이 만들어 내는 이벤트 (와이어에는 없음)
@dataclass
class Connect:
    pass


@dataclass
class Disconnect:
    pass


InboundEvent = Union[Login, SendMessage, Move, Typing, Offer, Answer, Ping, Connect, Disconnect]


def parse_event(frame: object) -> Optional[InboundEvent]:
    """수신 프레임을 이벤트로 변환. 형식이 틀리면 ``None``."""
    if not isinstance(frame, dict):
        return None
    op = frame.get("op")

    if op == OP_LOGIN:
        user = UserRecord.from_payload(frame.get("user"))
        return Login(user) if user else None
    if op == OP_MESSAGE_SEND:
        draft = MessageDraft.from_payload(frame.get("message"))
        return SendMessage(draft) if draft else None
    if op == OP_MOVE:
        position = Position.from_payload(frame.get("position"))
        return Move(position) if position else None
    if op == OP_TYPING:
        is_typing = frame.get("isTyping")
        return Typing(is_typing) if isinstance(is_typing, bool) else None
    if op == OP_OFFER:
        target_id = frame.get("targetId")
        if not isinstance(target_id, str) or not target_id or "sdp" not in frame:
            return None
        return Offer(target_id, frame["sdp"])
    if op == OP_ANSWER:
        if "sdp" not in frame:
            return None
        return Answer(frame["sdp"])
    if op == OP_PING:
        return Ping()
    return None


# ---------- 송신 프레임 ----------
def welcome_frame(connection_id: str) -> Dict[str, Any]:
    return {"ev": EV_WELCOME, "connectionId": connection_id}


def message_frame(message: Message) -> Dict[str, Any]:
    return {"ev": EV_MESSAGE_NEW, "message": message.to_payload()}


def users_frame(records: Iterable[UserRecord]) -> Dict[str, Any]:
    users: List[Dict[str, Any]] = [record.to_payload() for record in records]
    return {"ev": EV_USERS_UPDATE, "users": users}


def typing_frame(user_id: str, name: str, is_typing: bool) -> Dict[str, Any]:
    return {"ev": EV_TYPING, "userId": user_id, "name": name, "isTyping": is_typing}


def offer_frame(from_id: str, sdp: Any, from_name: str) -> Dict[str, Any]:
    return {"ev": EV_OFFER, "fromId": from_id, "sdp": sdp, "fromName": from_name}


def answer_frame(cid: str, sdp: Any) -> Dict[str, Any]:
    return {"ev": EV_ANSWER, "cid": cid, "sdp": sdp}


def pong_frame() -> Dict[str, Any]:
    return {"ev": EV_PONG}


__all__ = [
    "Answer",
    "Connect",
    "Disconnect",
    "InboundEvent",
    "Login",
    "Message",
    "MessageDraft",
    "Move",
    "Offer",
    "Ping",
    "Position",
    "SendMessage",
    "Typing",
    "UserRecord",
    "answer_frame",
    "message_frame",
    "offer_frame",
    "parse_event",
    "pong_frame",
    "typing_frame",
    "users_frame",
    "utc_now_iso",
    "welcome_frame",
]
