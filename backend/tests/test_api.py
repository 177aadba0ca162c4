"""Tests for the HTTP endpoints and the WebSocket protocol."""
import asyncio
from pathlib import Path
from types import SimpleNamespace

import anyio
import pytest
from fastapi.websockets import WebSocketDisconnect

from courier.chat.presence import LocalPresenceRegistry
from courier.chat.router import websocket_endpoint

from conftest import FakeWebSocket, auth_headers, connect_session, new_id

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def create_chat(api_client, services, owner: str, *others: str) -> dict:
    response = api_client.post(
        "/api/chats",
        json={"userIds": [owner, *others]},
        headers=auth_headers(services, owner),
    )
    assert response.status_code in (200, 201)
    return response.json()


def ws_url(services, user_id: str) -> str:
    return f"/ws?token={services.tokens.issue(user_id)}&userId={user_id}"


def receive_until(ws, event: str) -> dict:
    """Skip frames (e.g. presence refreshes) until one of the given type arrives."""
    for _ in range(20):
        frame = ws.receive_json()
        if frame["type"] == event:
            return frame["data"]
    raise AssertionError(f"no {event!r} frame received")


class IdleWebSocket(FakeWebSocket):
    """Accepted socket whose client never sends; lets a handler be cancelled mid-receive."""

    def __init__(self, services) -> None:
        super().__init__()
        self.app = SimpleNamespace(state=SimpleNamespace(services=services))
        self.headers = {}

    async def accept(self) -> None:
        pass

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

    async def receive_text(self) -> str:
        await asyncio.Event().wait()


class TestHttpBasics:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_missing_token_is_unauthorized(self, api_client):
        response = api_client.get("/api/chats")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_forged_token_is_unauthorized(self, api_client):
        response = api_client.get(
            "/api/chats", headers={"Authorization": f"Bearer {new_id()}.deadbeef"}
        )
        assert response.status_code == 401


class TestChatEndpoints:
    def test_create_then_find_existing(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        headers = auth_headers(app_services, alice)

        created = api_client.post("/api/chats", json={"userIds": [alice, bob]}, headers=headers)
        found = api_client.post("/api/chats", json={"userIds": [bob, alice]}, headers=headers)

        assert created.status_code == 201
        assert found.status_code == 200
        assert found.json()["id"] == created.json()["id"]

    def test_cannot_create_chat_for_others(self, api_client, app_services):
        response = api_client.post(
            "/api/chats",
            json={"userIds": [new_id(), new_id()]},
            headers=auth_headers(app_services, new_id()),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_list_chats(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)
        api_client.post(
            "/api/messages",
            json={"chatId": chat["id"], "content": "hey"},
            headers=auth_headers(app_services, alice),
        )

        listed = api_client.get("/api/chats", headers=auth_headers(app_services, bob)).json()
        assert [item["chat"]["id"] for item in listed] == [chat["id"]]
        assert listed[0]["latestMessage"]["text"] == "hey"


class TestMessageEndpoints:
    def test_send_fetch_edit_delete(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)
        a_headers = auth_headers(app_services, alice)
        b_headers = auth_headers(app_services, bob)

        sent = api_client.post(
            "/api/messages",
            json={"chatId": chat["id"], "content": "hello", "tempId": "t1"},
            headers=a_headers,
        )
        assert sent.status_code == 201
        message = sent.json()
        assert message["tempId"] == "t1"
        assert message["readBy"] == [alice]

        fetched = api_client.get(f"/api/messages/{chat['id']}", headers=b_headers).json()
        assert [m["text"] for m in fetched] == ["hello"]

        edited = api_client.put(
            f"/api/messages/{message['id']}", json={"text": "hello!"}, headers=a_headers
        )
        assert edited.status_code == 200
        assert edited.json()["message"]["text"] == "hello!"

        deleted = api_client.delete(f"/api/messages/{message['id']}", headers=a_headers)
        assert deleted.json() == {"messageId": message["id"]}

        fetched = api_client.get(f"/api/messages/{chat['id']}", headers=b_headers).json()
        assert fetched[0]["deleted"] is True
        assert fetched[0]["text"] is None

    def test_mark_read_reports_changes_once(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)
        api_client.post(
            "/api/messages",
            json={"chatId": chat["id"], "content": "unread"},
            headers=auth_headers(app_services, alice),
        )
        b_headers = auth_headers(app_services, bob)

        first = api_client.post(f"/api/messages/{chat['id']}/read", headers=b_headers).json()
        second = api_client.post(f"/api/messages/{chat['id']}/read", headers=b_headers).json()
        assert len(first["updated"]) == 1
        assert second == {"updated": []}

    def test_error_statuses(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)
        a_headers = auth_headers(app_services, alice)
        message = api_client.post(
            "/api/messages", json={"chatId": chat["id"], "content": "x"}, headers=a_headers
        ).json()

        bad_id = api_client.get("/api/messages/not-a-uuid", headers=a_headers)
        assert bad_id.status_code == 400
        assert bad_id.json()["error"] == "validation_error"

        missing = api_client.get(f"/api/messages/{new_id()}", headers=a_headers)
        assert missing.status_code == 404

        stranger = api_client.get(
            f"/api/messages/{chat['id']}", headers=auth_headers(app_services, new_id())
        )
        assert stranger.status_code == 403

        not_sender = api_client.put(
            f"/api/messages/{message['id']}",
            json={"text": "mine now"},
            headers=auth_headers(app_services, bob),
        )
        assert not_sender.status_code == 403

        no_content = api_client.post(
            "/api/messages", json={"chatId": chat["id"]}, headers=a_headers
        )
        assert no_content.status_code == 400
        assert "content" in no_content.json()["message"]

    def test_online_users_route_is_not_a_chat_id(self, api_client, app_services):
        response = api_client.get(
            "/api/messages/online-users", headers=auth_headers(app_services, new_id())
        )
        assert response.status_code == 200
        assert response.json() == {"onlineUsers": []}


class TestImageMessages:
    def test_upload_send_and_download(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)

        response = api_client.post(
            "/api/messages/image",
            data={"chatId": chat["id"], "tempId": "img-1"},
            files={"file": ("cat.png", PNG_BYTES, "image/png")},
            headers=auth_headers(app_services, alice),
        )
        assert response.status_code == 201
        message = response.json()
        assert message["text"] is None
        assert message["imageUrl"].startswith("/media/")
        assert message["tempId"] == "img-1"

        download = api_client.get(message["imageUrl"], headers=auth_headers(app_services, bob))
        assert download.status_code == 200
        assert download.content == PNG_BYTES

        stranger = api_client.get(
            message["imageUrl"], headers=auth_headers(app_services, new_id())
        )
        assert stranger.status_code == 403

    @pytest.mark.parametrize(
        "filename, content, mime_type",
        [
            ("notes.txt", b"plain text", "text/plain"),
            ("huge.png", b"\x00" * 2048, "image/png"),
            ("empty.png", b"", "image/png"),
        ],
    )
    def test_rejected_uploads(self, api_client, app_services, filename, content, mime_type):
        alice, bob = new_id(), new_id()
        chat = create_chat(api_client, app_services, alice, bob)
        response = api_client.post(
            "/api/messages/image",
            data={"chatId": chat["id"]},
            files={"file": (filename, content, mime_type)},
            headers=auth_headers(app_services, alice),
        )
        assert response.status_code == 400
        assert app_services.store.count_messages(chat["id"]) == 0

    def test_non_participant_upload_is_forbidden(self, api_client, app_services):
        chat = create_chat(api_client, app_services, new_id(), new_id())
        response = api_client.post(
            "/api/messages/image",
            data={"chatId": chat["id"]},
            files={"file": ("cat.png", PNG_BYTES, "image/png")},
            headers=auth_headers(app_services, new_id()),
        )
        assert response.status_code == 403

    def test_failed_send_discards_uploaded_image(self, api_client, app_services, config):
        alice = new_id()
        chat = create_chat(api_client, app_services, alice, new_id())
        response = api_client.post(
            "/api/messages/image",
            data={"chatId": chat["id"], "tempId": "t" * 200},
            files={"file": ("cat.png", PNG_BYTES, "image/png")},
            headers=auth_headers(app_services, alice),
        )
        assert response.status_code == 400
        assert list(Path(config.storage.media_dir).rglob("*.png")) == []
        assert app_services.database.execute("SELECT COUNT(*) FROM media_metadata") == [(0,)]


class TestWebSocket:
    def test_bad_token_closes_with_4401(self, api_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={new_id()}.bad"):
                pass
        assert exc_info.value.code == 4401

    def test_token_for_other_user_closes_with_4401(self, api_client, app_services):
        token = app_services.tokens.issue(new_id())
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with api_client.websocket_connect(f"/ws?token={token}&userId={new_id()}"):
                pass
        assert exc_info.value.code == 4401

    def test_bearer_header_handshake(self, api_client, app_services):
        alice = new_id()
        with api_client.websocket_connect("/ws", headers=auth_headers(app_services, alice)) as ws:
            assert ws.receive_json()["data"]["userId"] == alice

    @pytest.mark.timeout(20)
    def test_connect_join_send_and_presence(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat_id = create_chat(api_client, app_services, alice, bob)["id"]

        with api_client.websocket_connect(ws_url(app_services, alice)) as ws_a:
            connected = ws_a.receive_json()
            assert connected["type"] == "connected"
            assert connected["data"]["userId"] == alice
            assert connected["data"]["connectionId"]
            assert ws_a.receive_json() == {"type": "onlineUsers", "data": [alice]}

            ws_a.send_json({"type": "join chat", "data": {"chatId": chat_id}})
            assert ws_a.receive_json() == {"type": "joined", "data": {"chatId": chat_id}}

            with api_client.websocket_connect(ws_url(app_services, bob)) as ws_b:
                assert receive_until(ws_a, "onlineUsers") == sorted([alice, bob])
                receive_until(ws_b, "connected")
                receive_until(ws_b, "onlineUsers")

                ws_b.send_json({"type": "join chat", "chatId": chat_id})
                assert receive_until(ws_b, "joined") == {"chatId": chat_id}

                ws_a.send_json({
                    "type": "send message",
                    "data": {"chatId": chat_id, "content": "hi", "tempId": "t1"},
                })
                for ws in (ws_a, ws_b):
                    received = receive_until(ws, "message received")
                    assert received["text"] == "hi"
                    assert received["tempId"] == "t1"
                delivered = receive_until(ws_a, "message delivered")
                assert delivered["deliveredTo"] == [bob]

                ws_b.send_json({"type": "typing", "data": {"chatId": chat_id}})
                assert receive_until(ws_a, "typing") == {"chatId": chat_id, "userId": bob}

            assert receive_until(ws_a, "onlineUsers") == [alice]

    def test_errors_go_only_to_the_sender(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat_id = create_chat(api_client, app_services, alice, bob)["id"]

        with api_client.websocket_connect(ws_url(app_services, alice)) as ws:
            receive_until(ws, "onlineUsers")

            ws.send_text("not json")
            assert receive_until(ws, "error")["kind"] == "validation_error"

            ws.send_json({"type": "typing", "data": {"chatId": chat_id}})
            assert receive_until(ws, "error")["kind"] == "forbidden"

            ws.send_json({"type": "join chat", "data": {"chatId": new_id()}})
            assert receive_until(ws, "error")["kind"] == "not_found"

            ws.send_json({"type": "dance", "data": {}})
            assert receive_until(ws, "error")["kind"] == "validation_error"

    def test_mark_read_over_websocket(self, api_client, app_services):
        alice, bob = new_id(), new_id()
        chat_id = create_chat(api_client, app_services, alice, bob)["id"]
        message = api_client.post(
            "/api/messages",
            json={"chatId": chat_id, "content": "read me"},
            headers=auth_headers(app_services, alice),
        ).json()

        with api_client.websocket_connect(ws_url(app_services, alice)) as ws_a:
            ws_a.send_json({"type": "join chat", "data": {"chatId": chat_id}})
            receive_until(ws_a, "joined")
            with api_client.websocket_connect(ws_url(app_services, bob)) as ws_b:
                ws_b.send_json({"type": "mark read", "data": {"chatId": chat_id}})
                assert receive_until(ws_a, "message read") == {
                    "messageId": message["id"],
                    "readBy": bob,
                }

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_cancelled_handler_still_releases_presence(self, services, monkeypatch):
        original_remove = LocalPresenceRegistry.remove

        async def remove_after_checkpoint(registry, user_id, connection_id):
            await asyncio.sleep(0)
            return await original_remove(registry, user_id, connection_id)

        monkeypatch.setattr(LocalPresenceRegistry, "remove", remove_after_checkpoint)

        observer, observer_ws = await connect_session(services, new_id())
        user = new_id()
        websocket = IdleWebSocket(services)

        async with anyio.create_task_group() as tg:
            tg.start_soon(websocket_endpoint, websocket, services.tokens.issue(user), user)
            while "onlineUsers" not in websocket.types():
                await anyio.sleep(0.01)
            tg.cancel_scope.cancel()

        assert services.presence.is_online(user) is False
        assert observer_ws.of_type("onlineUsers")[-1] == [observer.user_id]
