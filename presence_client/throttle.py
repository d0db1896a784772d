"""드래그 위치 전송 제한."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional


class PositionThrottle:
    """간격 안의 갱신은 마지막 값만 남겼다가 나중에 보낸다.

    - 창이 열려 있으면(직전 전송 후 ``interval`` 경과) 즉시 전송
    - 창 안에서는 최신 값만 보관하고 ``schedule`` 로 후속 ``flush`` 예약
    - ``finish`` 는 창과 무관하게 최종 값을 반드시 전송
    """

    def __init__(
        self,
        interval: float,
        send: Callable[[Any], None],
        *,
        clock: Callable[[], float] = time.monotonic,
        schedule: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.interval = interval
        self._send = send
        self._clock = clock
        self._schedule = schedule
        self._last_sent: Optional[float] = None
        self._latest: Any = None
        self._pending = False
        self._scheduled = False

    @property
    def pending(self) -> bool:
        return self._pending

    def push(self, value: Any) -> None:
        now = self._clock()
        self._latest = value
        if self._last_sent is None or now - self._last_sent >= self.interval:
            self._send_now(value)
            return
        self._pending = True
        if self._schedule is not None and not self._scheduled:
            self._scheduled = True
            self._schedule(self.interval - (now - self._last_sent))

    def flush(self) -> None:
        self._scheduled = False
        if self._pending:
            self._send_now(self._latest)

    def finish(self, value: Any) -> None:
        self._scheduled = False
        self._latest = value
        self._send_now(value)

    def cancel(self) -> None:
        self._pending = False
        self._scheduled = False

    def _send_now(self, value: Any) -> None:
        self._pending = False
        self._last_sent = self._clock()
        self._send(value)


__all__ = ["PositionThrottle"]
