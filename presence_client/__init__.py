"""
Presence hub 클라이언트 패키지.

- net: TCP 연결/재접속 워커 (PyQt5 시그널)
- throttle: 드래그 위치 전송 제한
- sync: 서버 이벤트 → 로컬 상태 동기화, 뷰 계층용 전송 메서드
"""

__all__ = [
    "net",
    "sync",
    "throttle",
]
