"""연결 ID → 사용자 상태 레지스트리."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .events import UserRecord

LOGGER = logging.getLogger(__name__)


class SessionRegistry:
    """서버가 단독으로 소유하는 사용자 맵.

    잠금이 없다. 호출자(라우터)가 한 번에 하나의 이벤트만 처리한다는
    전제에서만 사용한다.
    """

    def __init__(self) -> None:
        self._records: Dict[str, UserRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, cid: object) -> bool:
        return cid in self._records

    def put(self, cid: str, record: UserRecord) -> None:
        record.id = cid
        self._records[cid] = record

    def get(self, cid: str) -> Optional[UserRecord]:
        return self._records.get(cid)

    def update(self, cid: str, mutator: Callable[[UserRecord], None]) -> Optional[UserRecord]:
        record = self._records.get(cid)
        if record is None:
            LOGGER.debug("update on unknown connection ignored: %s", cid)
            return None
        mutator(record)
        return record

    def remove(self, cid: str) -> Optional[UserRecord]:
        return self._records.pop(cid, None)

    def snapshot(self) -> List[UserRecord]:
        """현재 상태의 복사본 (로그인 순서)."""
        return [
            replace(record, position=replace(record.position))
            for record in self._records.values()
        ]


__all__ = ["SessionRegistry"]
