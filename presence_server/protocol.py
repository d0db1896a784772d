"""서버와 클라이언트가 공유하는 줄 단위 JSON 프레이밍.

한 프레임은 UTF-8 JSON 값 하나와 ``\\n`` 으로 이루어진다.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

LOGGER = logging.getLogger(__name__)

# 줄바꿈 없이 쌓일 수 있는 최대 바이트 수
MAX_MESSAGE_BYTES = 1_000_000


class ProtocolError(Exception):
    """프레임을 만들거나 읽을 수 없을 때."""


class JsonLineFramer:
    """수신 바이트를 모아 완성된 줄마다 JSON 값을 꺼낸다.

    깨진 줄은 경고 후 버리고 ``skipped`` 만 올린다. 아직 끝나지 않은 줄이
    ``max_message_bytes`` 를 넘으면 ``ProtocolError`` 를 던지며, 호출자는
    그 연결만 닫으면 된다.
    """

    def __init__(self, *, max_message_bytes: int = MAX_MESSAGE_BYTES) -> None:
        self._pending = b""
        self._limit = max_message_bytes
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[Any]:
        if not chunk:
            return []
        *lines, self._pending = (self._pending + chunk).split(b"\n")

        decoded: List[Any] = []
        for raw in lines:
            raw = raw.strip()
            if not raw:
                continue
            try:
                decoded.append(parse_json_line(raw))
            except ProtocolError as exc:
                self.skipped += 1
                LOGGER.warning("skip bad line (%d bytes): %s", len(raw), exc)

        if len(self._pending) > self._limit:
            raise ProtocolError(f"unterminated line over {self._limit} bytes")
        return decoded

    def flush(self) -> None:
        self._pending = b""


def parse_json_line(line: bytes) -> Any:
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError(f"not utf-8: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"bad json: {exc}") from exc


def encode_message(obj: Dict[str, Any]) -> bytes:
    """프레임 하나를 전송용 바이트로. 직렬화할 수 없으면 ``ProtocolError``."""
    try:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"cannot encode frame: {exc}") from exc
    return text.encode("utf-8") + b"\n"


__all__ = [
    "JsonLineFramer",
    "MAX_MESSAGE_BYTES",
    "ProtocolError",
    "encode_message",
    "parse_json_line",
]
