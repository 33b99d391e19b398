"""Telegram Bot API client.

Every request is a blocking stdlib `urllib` call executed in a worker thread,
so the dispatch loop and webhook server stay async-friendly.

Failures are classified before they leave this module:
- HTTP 429, HTTP 5xx, network errors, timeouts and undecodable bodies raise
  `TransientPlatformError` (`retry_after` is taken from the response
  `parameters` when Telegram provides it).
- Any other `ok=false` response raises `PermanentPlatformError`.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Final

import anyio.to_thread as to_thread

from golden_axe.platform import (
    Member,
    PermanentPlatformError,
    PlatformError,
    TransientPlatformError,
)

_TELEGRAM_API_BASE: Final[str] = "https://api.telegram.org"
_DEFAULT_TIMEOUT_SECONDS: Final[float] = 10.0


def _error_from_payload(method: str, status: int | None, payload: Any) -> PlatformError:
    desc: str | None = None
    error_code = status
    retry_after: float | None = None
    if isinstance(payload, dict):
        if isinstance(payload.get("description"), str):
            desc = payload["description"]
        if isinstance(payload.get("error_code"), int):
            error_code = payload["error_code"]
        params = payload.get("parameters")
        if isinstance(params, dict) and isinstance(params.get("retry_after"), int | float):
            retry_after = float(params["retry_after"])

    message = f"Telegram {method} failed" + (f": {desc}" if desc else "")
    if error_code == 429 or (error_code is not None and error_code >= 500):
        return TransientPlatformError(
            message, method=method, error_code=error_code, retry_after=retry_after
        )
    return PermanentPlatformError(message, method=method, error_code=error_code)


@dataclass(slots=True)
class TelegramBotApi:
    """Telegram Bot API client implementing `PlatformClient`."""

    token: str

    def _method_url(self, method: str) -> str:
        # Never log/print this URL; it embeds the bot token.
        return f"{_TELEGRAM_API_BASE}/bot{self.token}/{method}"

    def _call_sync(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> Any:
        body = json.dumps(params or {}, ensure_ascii=False).encode("utf-8")
        request = urllib.request.Request(
            self._method_url(method), data=body, method="POST"
        )
        request.add_header("Content-Type", "application/json")

        try:
            with urllib.request.urlopen(request, timeout=timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            # Telegram still returns a JSON body describing the error.
            try:
                payload = json.loads(e.read().decode("utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError):
                payload = None
            raise _error_from_payload(method, e.code, payload) from e
        except (urllib.error.URLError, OSError) as e:
            raise TransientPlatformError(
                f"Telegram {method} failed: network error", method=method
            ) from e

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TransientPlatformError(
                f"Telegram {method} failed: invalid JSON", method=method
            ) from e

        if not isinstance(payload, dict) or payload.get("ok") is not True:
            raise _error_from_payload(method, None, payload)
        return payload.get("result")

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        abandon_on_cancel: bool = False,
    ) -> Any:
        """Invoke a Bot API method and return its `result`.

        `abandon_on_cancel` lets a cancelled caller return without waiting for
        the worker thread; only safe for reads such as `getUpdates`.
        """

        return await to_thread.run_sync(
            lambda: self._call_sync(method, params, timeout=timeout),
            abandon_on_cancel=abandon_on_cancel,
        )

    async def get_me(self) -> dict[str, Any]:
        result = await self.call("getMe")
        if not isinstance(result, dict):
            raise TransientPlatformError(
                "Telegram getMe failed: missing result dict", method="getMe"
            )
        return result

    async def get_updates(
        self,
        *,
        offset: int | None,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        """Long-poll `getUpdates`."""

        params: dict[str, Any] = {
            "timeout": timeout_seconds,
            "limit": 100,
            "allowed_updates": ["message", "chat_member", "my_chat_member"],
        }
        if offset is not None:
            params["offset"] = offset

        # Client timeout should exceed server long-poll timeout.
        result = await self.call(
            "getUpdates",
            params,
            timeout=max(5, timeout_seconds + 15),
            abandon_on_cancel=True,
        )
        if not isinstance(result, list):
            raise TransientPlatformError(
                "Telegram getUpdates failed: missing result list", method="getUpdates"
            )
        return [item for item in result if isinstance(item, dict)]

    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        message_thread_id: int | None = None,
    ) -> dict[str, Any]:
        """Send a message via `sendMessage` with `parse_mode="HTML"`."""

        # Keep a minimal guard to avoid Telegram rejecting NUL-containing strings.
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text.replace("\x00", "\ufffd"),
            "parse_mode": "HTML",
        }
        if reply_to_message_id is not None:
            params["reply_parameters"] = {
                "message_id": reply_to_message_id,
                "allow_sending_without_reply": True,
            }
        if message_thread_id is not None:
            params["message_thread_id"] = message_thread_id

        result = await self.call("sendMessage", params)
        return result if isinstance(result, dict) else {}

    async def set_member_title(self, *, chat_id: int, user_id: int, title: str) -> None:
        await self.call(
            "setChatAdministratorCustomTitle",
            {"chat_id": chat_id, "user_id": user_id, "custom_title": title},
        )

    async def promote_chat_member(
        self,
        *,
        chat_id: int,
        user_id: int,
        can_invite_users: bool,
        is_anonymous: bool = False,
    ) -> None:
        # Omitted rights default to false, so `can_invite_users=False` demotes.
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "user_id": user_id,
            "can_invite_users": can_invite_users,
        }
        if is_anonymous:
            params["is_anonymous"] = True
        await self.call("promoteChatMember", params)

    async def get_chat_administrators(self, chat_id: int) -> list[Member]:
        result = await self.call("getChatAdministrators", {"chat_id": chat_id})
        if not isinstance(result, list):
            raise TransientPlatformError(
                "Telegram getChatAdministrators failed: missing result list",
                method="getChatAdministrators",
            )
        return [
            Member.from_chat_member(chat_id, item)
            for item in result
            if isinstance(item, dict)
        ]

    async def set_my_commands(self, commands: list[tuple[str, str]]) -> None:
        await self.call(
            "setMyCommands",
            {
                "commands": [
                    {"command": name, "description": description}
                    for name, description in commands
                ]
            },
        )

    async def set_webhook(self, *, url: str, secret_token: str | None = None) -> None:
        params: dict[str, Any] = {"url": url}
        if secret_token is not None:
            params["secret_token"] = secret_token
        await self.call("setWebhook", params)

    async def delete_webhook(self) -> None:
        await self.call("deleteWebhook", {"drop_pending_updates": False})
