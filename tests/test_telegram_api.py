import io
import json
import urllib.error
import urllib.request

import pytest

from golden_axe.platform import PermanentPlatformError, TransientPlatformError
from golden_axe.telegram import TelegramBotApi


class _FakeResponse:
    def __init__(self, payload: object) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _http_error(code: int, payload: object) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        "https://api.telegram.org/bot<token>/m",
        code,
        "error",
        None,  # type: ignore[arg-type]
        io.BytesIO(json.dumps(payload).encode("utf-8")),
    )


@pytest.mark.anyio
async def test_async_wrappers_send_expected_params(monkeypatch) -> None:
    api = TelegramBotApi(token="test-token")
    calls: list[tuple[str, dict, float]] = []

    def fake_call_sync(self, method, params=None, *, timeout=10.0):
        calls.append((method, params or {}, timeout))
        if method == "getUpdates":
            return [{"update_id": 1}, "junk"]
        if method == "getChatAdministrators":
            return [
                {
                    "status": "administrator",
                    "user": {"id": 5},
                    "custom_title": "Axe",
                    "can_be_edited": True,
                },
                {"status": "creator", "user": {"id": 6}},
            ]
        if method == "sendMessage":
            return {"message_id": 999}
        return True

    monkeypatch.setattr(TelegramBotApi, "_call_sync", fake_call_sync)

    updates = await api.get_updates(offset=5, timeout_seconds=12)
    assert updates == [{"update_id": 1}]
    assert calls[-1][1]["offset"] == 5
    assert calls[-1][2] == 27

    msg = await api.send_message(chat_id=42, text="a\x00b", reply_to_message_id=7)
    assert msg["message_id"] == 999
    assert calls[-1][1] == {
        "chat_id": 42,
        "text": "a\ufffdb",
        "parse_mode": "HTML",
        "reply_parameters": {"message_id": 7, "allow_sending_without_reply": True},
    }

    await api.set_member_title(chat_id=42, user_id=5, title="Axe")
    assert calls[-1][:2] == (
        "setChatAdministratorCustomTitle",
        {"chat_id": 42, "user_id": 5, "custom_title": "Axe"},
    )

    await api.promote_chat_member(chat_id=42, user_id=5, can_invite_users=False)
    assert calls[-1][:2] == (
        "promoteChatMember",
        {"chat_id": 42, "user_id": 5, "can_invite_users": False},
    )

    await api.promote_chat_member(
        chat_id=42, user_id=5, can_invite_users=True, is_anonymous=True
    )
    assert calls[-1][1] == {
        "chat_id": 42,
        "user_id": 5,
        "can_invite_users": True,
        "is_anonymous": True,
    }

    admins = await api.get_chat_administrators(42)
    assert [(m.user_id, m.title, m.can_be_edited, m.is_admin) for m in admins] == [
        (5, "Axe", True, True),
        (6, None, False, True),
    ]

    await api.set_my_commands([("help", "Display this text.")])
    assert calls[-1][1] == {
        "commands": [{"command": "help", "description": "Display this text."}]
    }


@pytest.mark.parametrize(
    ("code", "payload", "expected", "retry_after"),
    [
        (
            429,
            {
                "ok": False,
                "error_code": 429,
                "description": "Too Many Requests: retry after 3",
                "parameters": {"retry_after": 3},
            },
            TransientPlatformError,
            3.0,
        ),
        (502, {"ok": False, "description": "Bad Gateway"}, TransientPlatformError, None),
        (
            400,
            {"ok": False, "error_code": 400, "description": "Bad Request: not enough rights"},
            PermanentPlatformError,
            None,
        ),
    ],
)
def test_http_errors_are_classified(
    monkeypatch, code: int, payload: dict, expected: type, retry_after: float | None
) -> None:
    def fake_urlopen(request, timeout):
        raise _http_error(code, payload)

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    api = TelegramBotApi(token="test-token")

    with pytest.raises(expected) as info:
        api._call_sync("setChatAdministratorCustomTitle", {})

    assert info.value.method == "setChatAdministratorCustomTitle"
    assert getattr(info.value, "retry_after", None) == retry_after
    assert "test-token" not in str(info.value)


def test_network_errors_are_transient(monkeypatch) -> None:
    def fake_urlopen(request, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    with pytest.raises(TransientPlatformError, match="network error"):
        TelegramBotApi(token="t")._call_sync("getMe")


def test_ok_false_body_is_permanent_and_ok_body_returns_result(monkeypatch) -> None:
    responses = [
        {"ok": False, "error_code": 403, "description": "Forbidden: bot was kicked"},
        {"ok": True, "result": {"id": 1, "username": "AxeBot"}},
    ]

    def fake_urlopen(request, timeout):
        assert request.get_method() == "POST"
        assert request.get_header("Content-type") == "application/json"
        return _FakeResponse(responses.pop(0))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    api = TelegramBotApi(token="t")

    with pytest.raises(PermanentPlatformError, match="bot was kicked"):
        api._call_sync("getMe")
    assert api._call_sync("getMe") == {"id": 1, "username": "AxeBot"}
