"""Presence hub TCP 진입점."""

from __future__ import annotations

import argparse
import logging
import socket
import threading

from .hub import SEND_QUEUE_SIZE, ServerHub, Session
from .protocol import MAX_MESSAGE_BYTES, JsonLineFramer, ProtocolError
from .signaling import ANSWER_ROUTING_MODES, ANSWER_UNICAST


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Presence & Chat Hub - Server")
    parser.add_argument("--host", default="0.0.0.0", help="서버 바인드 호스트 (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=3000, help="서버 포트 (default: 3000)")
    parser.add_argument("--backlog", type=int, default=128, help="listen backlog 크기")
    parser.add_argument("--heartbeat-timeout", type=int, default=120, help="무응답 세션 타임아웃(초), 0이면 끔")
    parser.add_argument(
        "--answer-routing",
        choices=ANSWER_ROUTING_MODES,
        default=ANSWER_UNICAST,
        help="answer 전달 방식: offer 보낸 쪽에만(unicast) 또는 전체(broadcast)",
    )
    parser.add_argument(
        "--max-message-bytes",
        type=int,
        default=MAX_MESSAGE_BYTES,
        help="연결당 미완성 줄 버퍼 상한(바이트)",
    )
    parser.add_argument(
        "--send-queue-size",
        type=int,
        default=SEND_QUEUE_SIZE,
        help="연결당 보내지 못하고 쌓인 프레임 상한, 넘으면 그 연결을 닫음",
    )
    parser.add_argument("--log-level", default="INFO", help="로그 레벨 (DEBUG/INFO/...)")
    return parser.parse_args(argv)


def client_worker(hub: ServerHub, session: Session, *, max_message_bytes: int = MAX_MESSAGE_BYTES) -> None:
    framer = JsonLineFramer(max_message_bytes=max_message_bytes)
    sock = session.socket
    try:
        while session.alive:
            chunk = sock.recv(4096)
            if not chunk:
                break
            try:
                messages = framer.feed(chunk)
            except ProtocolError as exc:
                logging.warning("closing session %s: %s", session.id, exc)
                break
            for msg in messages:
                hub.route_message(session, msg)
    except (ConnectionError, OSError):
        pass
    finally:
        hub.unregister_session(session)


def run_server(args: argparse.Namespace) -> None:
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    hub = ServerHub(
        heartbeat_timeout=args.heartbeat_timeout,
        answer_routing=args.answer_routing,
        send_queue_size=args.send_queue_size,
    )

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_sock:
        server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_sock.bind((args.host, args.port))
        server_sock.listen(args.backlog)
        logging.info("Presence hub listening on %s:%s (answer routing: %s)", args.host, args.port, args.answer_routing)

        try:
            while True:
                conn, addr = server_sock.accept()
                conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                session = hub.new_session(conn, addr)
                threading.Thread(
                    target=client_worker,
                    args=(hub, session),
                    kwargs={"max_message_bytes": args.max_message_bytes},
                    daemon=True,
                ).start()
        except KeyboardInterrupt:
            logging.info("KeyboardInterrupt → shutting down")
        finally:
            hub.shutdown()


def main() -> None:
    args = parse_args()
    run_server(args)


if __name__ == "__main__":
    main()
