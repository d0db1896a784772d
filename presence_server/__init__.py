"""
Presence hub 서버 패키지 초기화 모듈.

서버 구성 요소는 다음 하위 모듈에 정리되어 있다.
- protocol: JSON line 기반 프레이밍/직렬화
- events: 이벤트 이름, 페이로드 형태, 수신 이벤트 파싱
- registry: 연결 ID → 사용자 상태 레지스트리
- router: 연결별 상태 머신과 접속/채팅 팬아웃
- signaling: offer/answer 중계
- hub: 세션 관리와 이벤트 직렬화
- main: TCP 서버 진입점
"""

__all__ = [
    "events",
    "hub",
    "protocol",
    "registry",
    "router",
    "signaling",
]
