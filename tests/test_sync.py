import random

import pytest

from presence_client.sync import Bounds, ClientConfig, ClientSynchronizer


class FakeClock:
    def __init__(self):
        self.now = 50.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(transport, clock):
    return ClientSynchronizer(transport, clock=clock, rng=random.Random(7))


def welcome(transport, cid="c-1"):
    transport.eventReceived.emit({"ev": "welcome", "connectionId": cid})


def roster(transport, *users):
    transport.eventReceived.emit({"ev": "users:update", "users": list(users)})


def user(cid, name, x=0, y=0):
    return {"id": cid, "name": name, "status": "online", "position": {"x": x, "y": y}, "color": "", "avatar": ""}


@pytest.fixture
def active(client, transport):
    """c-1 로 Taro 로그인 완료, 로스터 수신까지 끝난 상태."""
    welcome(transport, "c-1")
    client.set_username("Taro")
    roster(transport, user("c-1", "Taro", 10, 10), user("c-2", "Hana", 50, 50))
    transport.sent.clear()
    return client


def test_login_waits_for_connection_identity(client, transport):
    assert client.set_username("Taro") is False
    assert transport.ops("login") == []

    welcome(transport, "c-1")

    (login,) = transport.ops("login")
    assert login["user"]["id"] == "c-1"
    assert login["user"]["name"] == "Taro"
    assert login["user"]["avatar"].endswith("seed=Taro")
    assert 0 <= login["user"]["position"]["x"] < 600
    assert 0 <= login["user"]["position"]["y"] < 400
    assert client.is_initialized
    assert client.connection_state == "active"


def test_initializer_is_idempotent_per_connection(client, transport):
    welcome(transport, "c-1")

    assert client.initialize_user("Taro") is True
    assert client.initialize_user("Taro") is False
    welcome(transport, "c-1")

    assert len(transport.ops("login")) == 1


def test_new_connection_identity_logs_in_again(client, transport):
    welcome(transport, "c-1")
    client.set_username("Taro")
    transport.close()
    transport.connect_to("localhost", 3000)

    welcome(transport, "c-2")

    logins = transport.ops("login")
    assert [m["user"]["id"] for m in logins] == ["c-1", "c-2"]


def test_inbound_events_build_local_view(active, transport):
    seen = []
    active.typingChanged.connect(seen.append)

    transport.eventReceived.emit({"ev": "message:new", "message": {"id": "msg-1", "type": "user", "sender": "Hana", "content": "hi", "timestamp": "t"}})
    transport.eventReceived.emit({"ev": "typing", "userId": "c-2", "name": "Hana", "isTyping": True})
    transport.eventReceived.emit({"ev": "typing", "userId": "c-2", "name": "Hana", "isTyping": True})
    transport.eventReceived.emit({"ev": "typing", "userId": "c-3", "name": "Jiro", "isTyping": True})
    transport.eventReceived.emit({"ev": "typing", "userId": "c-2", "name": "Hana", "isTyping": False})

    assert [m["content"] for m in active.messages] == ["hi"]
    assert active.typing_users == ["Jiro"]
    assert seen == [["Hana"], ["Hana", "Jiro"], ["Jiro"]]
    assert [u["name"] for u in active.users] == ["Taro", "Hana"]


def test_malformed_inbound_events_are_ignored(active, transport):
    transport.eventReceived.emit({"ev": "users:update", "users": "nope"})
    transport.eventReceived.emit({"ev": "message:new"})
    transport.eventReceived.emit({"ev": "typing", "name": "Hana", "isTyping": "yes"})
    transport.eventReceived.emit({"ev": "mystery"})

    assert [u["name"] for u in active.users] == ["Taro", "Hana"]
    assert active.messages == []
    assert active.typing_users == []


def test_disconnect_clears_everything(active, transport):
    transport.eventReceived.emit({"ev": "message:new", "message": {"id": "msg-1", "type": "user", "content": "hi", "timestamp": "t"}})
    transport.eventReceived.emit({"ev": "typing", "userId": "c-2", "name": "Hana", "isTyping": True})

    transport.disconnected.emit()

    assert active.users == []
    assert active.messages == []
    assert active.typing_users == []
    assert active.connection_id is None
    assert not active.is_initialized
    assert active.connection_state == "disconnected"


def test_message_log_is_capped(transport, clock):
    client = ClientSynchronizer(transport, config=ClientConfig(message_log_limit=3), clock=clock)
    for i in range(5):
        transport.eventReceived.emit({"ev": "message:new", "message": {"id": f"msg-{i}", "type": "user", "content": str(i), "timestamp": "t"}})

    assert [m["id"] for m in client.messages] == ["msg-2", "msg-3", "msg-4"]


def test_send_message_then_clears_typing(active, transport):
    assert active.send_message("hello") is True

    sent = transport.sent
    assert [m["op"] for m in sent] == ["message:send", "typing"]
    assert sent[0]["message"]["content"] == "hello"
    assert sent[0]["message"]["sender"] == "Taro"
    assert sent[1]["isTyping"] is False


def test_send_refused_when_not_logged_in_or_blank(client, transport, active):
    assert active.send_message("   ") is False
    transport.disconnected.emit()

    assert active.send_message("hello") is False
    assert active.send_typing_update(True) is False
    assert active.send_position(1, 2) is False
    assert transport.sent == []


def test_typing_update(active, transport):
    assert active.send_typing_update(True) is True

    assert transport.sent == [{"op": "typing", "isTyping": True}]


def test_position_requires_own_record_in_roster(client, transport):
    welcome(transport, "c-1")
    client.set_username("Taro")
    transport.sent.clear()

    assert client.send_position(5, 5) is False
    assert client.begin_drag() is False
    assert transport.sent == []


def test_position_outside_drag_is_sent_directly(active, transport):
    assert active.send_position(120, 80) is True

    assert transport.sent == [{"op": "move", "position": {"x": 120, "y": 80}}]


def test_drag_throttles_and_always_sends_final(active, transport, clock):
    assert active.begin_drag()
    for step in range(1, 8):
        active.send_position(10 + step, 10 + step)
        clock.now += 0.01

    assert transport.ops("move") == [{"op": "move", "position": {"x": 11, "y": 11}}]
    own = next(u for u in active.users if u["id"] == "c-1")
    assert own["position"] == {"x": 17, "y": 17}

    assert active.end_drag() is True

    moves = transport.ops("move")
    assert len(moves) == 2
    assert moves[-1]["position"] == {"x": 17, "y": 17}
    assert not active.is_dragging


def test_local_position_wins_during_drag(active, transport):
    active.begin_drag()
    active.send_position(200, 150)

    roster(transport, user("c-1", "Taro", 11, 11), user("c-2", "Hana", 60, 60))

    positions = {u["name"]: u["position"] for u in active.users}
    assert positions == {"Taro": {"x": 200, "y": 150}, "Hana": {"x": 60, "y": 60}}

    active.end_drag()

    own = next(u for u in active.users if u["id"] == "c-1")
    assert own["position"] == {"x": 11, "y": 11}


def test_bounds_clamp_positions(transport, clock):
    config = ClientConfig(bounds=Bounds(width=300, height=200))
    client = ClientSynchronizer(transport, config=config, clock=clock)
    welcome(transport, "c-1")
    client.set_username("Taro")
    roster(transport, user("c-1", "Taro"))
    transport.sent.clear()

    client.send_position(-50, 1000)

    assert transport.sent == [{"op": "move", "position": {"x": 20, "y": 160}}]


def test_end_drag_without_drag_is_refused(active, transport):
    assert active.end_drag() is False
    assert transport.sent == []


def test_offers_go_to_everyone_else_and_answers_are_filtered(active, transport):
    answers = []
    active.answerReceived.connect(lambda cid, sdp: answers.append((cid, sdp)))

    assert active.send_offer({"type": "offer"}) == ["c-2"]
    assert transport.sent == [{"op": "offer", "targetId": "c-2", "sdp": {"type": "offer"}}]

    transport.eventReceived.emit({"ev": "answer", "cid": "c-9", "sdp": "stranger"})
    transport.eventReceived.emit({"ev": "answer", "cid": "c-2", "sdp": "from-hana"})
    transport.eventReceived.emit({"ev": "answer", "cid": "c-2", "sdp": "duplicate"})

    assert answers == [("c-2", "from-hana")]


def test_inbound_offer_is_surfaced(active, transport):
    offers = []
    active.offerReceived.connect(lambda cid, sdp, name: offers.append((cid, sdp, name)))

    transport.eventReceived.emit({"ev": "offer", "fromId": "c-2", "sdp": "v=0", "fromName": "Hana"})

    assert offers == [("c-2", "v=0", "Hana")]


def test_send_answer(active, transport):
    assert active.send_answer("v=0") is True
    assert transport.sent == [{"op": "answer", "sdp": "v=0"}]


def test_reconnect_exhaustion_is_surfaced(client, transport):
    states = []
    client.connectionStateChanged.connect(states.append)
    transport.connect_to("localhost", 3000)
    transport.disconnected.emit()

    transport.reconnectFailed.emit()

    assert states == ["connected", "disconnected", "failed"]
    assert client.connection_state == "failed"


def test_logout_closes_without_relogin(active, transport):
    active.logout()

    assert transport.closed == 1
    assert active.users == []
    transport.connect_to("localhost", 3000)
    welcome(transport, "c-5")
    assert transport.ops("login") == []


def test_late_connected_signal_keeps_logged_in_state(client, transport):
    client.set_username("Taro")
    welcome(transport, "c-1")
    assert client.connection_state == "active"

    transport.connected.emit()

    assert client.connection_state == "active"
