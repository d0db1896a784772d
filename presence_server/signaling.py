"""P2P 연결 협상용 offer/answer 중계.

SDP 페이로드는 열어보지 않고 그대로 전달한다. 미디어 자체는 서버를
거치지 않는다.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional

from .events import answer_frame, offer_frame
from .registry import SessionRegistry

if TYPE_CHECKING:
    from .router import Outbox

LOGGER = logging.getLogger(__name__)

ANSWER_UNICAST = "unicast"
ANSWER_BROADCAST = "broadcast"
ANSWER_ROUTING_MODES = (ANSWER_UNICAST, ANSWER_BROADCAST)


class SignalingRelay:
    """offer 는 대상 한 명에게, answer 는 설정에 따라 offer 보낸 쪽 또는 전체에게.

    unicast 모드에서는 대상별로 offer 보낸 연결을 도착 순서대로 쌓아 두고,
    answer 하나마다 가장 오래된 (아직 열려 있는) 한 명에게만 돌려준다.
    한 연결의 이벤트는 보낸 순서대로 처리되므로 대상의 answer 순서는
    offer 를 받은 순서와 같다.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        outbox: "Outbox",
        *,
        answer_routing: str = ANSWER_UNICAST,
        is_connected: Optional[Callable[[str], bool]] = None,
    ) -> None:
        if answer_routing not in ANSWER_ROUTING_MODES:
            raise ValueError(f"unknown answer routing: {answer_routing}")
        self.registry = registry
        self.outbox = outbox
        self.answer_routing = answer_routing
        self._is_connected = is_connected or registry.__contains__
        # target cid -> offer 보낸 cid (도착 순)
        self._pending: Dict[str, Deque[str]] = {}

    def offer(self, cid: str, target_id: str, sdp: Any) -> None:
        sender = self.registry.get(cid)
        if sender is None:
            LOGGER.warning("offer from unregistered connection dropped: %s", cid)
            return
        if not self._is_connected(target_id):
            LOGGER.warning("offer to unknown target dropped: %s -> %s", cid, target_id)
            return
        self._pending.setdefault(target_id, deque()).append(cid)
        self.outbox.send(target_id, offer_frame(cid, sdp, sender.name))
        LOGGER.debug("offer relayed: %s -> %s", cid, target_id)

    def answer(self, cid: str, sdp: Any) -> None:
        frame = answer_frame(cid, sdp)
        if self.answer_routing == ANSWER_BROADCAST:
            self.outbox.broadcast(frame)
            return

        offerer = self._next_offerer(cid)
        if offerer is None:
            LOGGER.warning("answer without pending offer dropped: %s", cid)
            return
        self.outbox.send(offerer, frame)
        LOGGER.debug("answer relayed: %s -> %s", cid, offerer)

    def pending_offers(self, target_id: str) -> List[str]:
        return list(self._pending.get(target_id, ()))

    def forget(self, cid: str) -> None:
        """연결 종료 시 해당 연결이 걸린 대기 offer 를 정리."""
        self._pending.pop(cid, None)
        for target_id in list(self._pending):
            queue = self._pending[target_id]
            while cid in queue:
                queue.remove(cid)
            if not queue:
                del self._pending[target_id]

    def _next_offerer(self, target_id: str) -> Optional[str]:
        queue = self._pending.get(target_id)
        offerer = None
        while queue and offerer is None:
            candidate = queue.popleft()
            if self._is_connected(candidate):
                offerer = candidate
        if not queue:
            self._pending.pop(target_id, None)
        return offerer


__all__ = [
    "ANSWER_BROADCAST",
    "ANSWER_ROUTING_MODES",
    "ANSWER_UNICAST",
    "SignalingRelay",
]
