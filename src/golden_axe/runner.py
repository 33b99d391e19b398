"""Update sources (long-poll and webhook) and the bot's process lifecycle."""

from __future__ import annotations

import contextlib
import hashlib
import secrets
import signal
import time
from collections.abc import Iterator
from logging import getLogger
from typing import Any

import anyio
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request, Response, status
from rich import print

from golden_axe.auth import AdminCache, AuthorizationGate
from golden_axe.commands import COMMAND_DESCRIPTIONS
from golden_axe.config import Config
from golden_axe.debug import DebugReporter
from golden_axe.dispatch import Dispatcher
from golden_axe.engine import RetryPolicy, TitleMutationEngine
from golden_axe.platform import PlatformError
from golden_axe.registry import TitleRegistry
from golden_axe.telegram import TelegramBotApi
from golden_axe.updates import Update, extract_chat_id, extract_update_id, filter_unseen_updates

logger = getLogger(__name__)

_MAX_POLL_BACKOFF_SECONDS = 30.0
_WEBHOOK_SETTLE_SECONDS = 0.5


def run_hash(token: str, *, now_ns: int | None = None) -> str:
    """Identifier of this process run; also the webhook path."""

    stamp = time.time_ns() if now_ns is None else now_ns
    return hashlib.sha256(f"{token}:{stamp}".encode()).hexdigest()[:16]


async def _submit_raw(dispatcher: Dispatcher, raw: dict[str, Any]) -> bool:
    try:
        update = Update.from_telegram(raw)
    except ValueError as e:
        logger.warning(f"Ignoring malformed update: {e}")
        return False
    return await dispatcher.submit(update)


async def poll_forever(
    api: TelegramBotApi,
    dispatcher: Dispatcher,
    *,
    timeout_seconds: int,
) -> None:
    """Long-poll `getUpdates` and feed every new update to `dispatcher`.

    Clears any webhook left by an earlier run first. Runs until cancelled.
    Poll errors back off exponentially up to 30s.
    """

    if timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be > 0; got {timeout_seconds}")

    # getUpdates answers 409 Conflict while a webhook is registered.
    await api.delete_webhook()

    last_consumed_update_id: int | None = None
    next_offset: int | None = None
    backoff_seconds = 1.0

    while True:
        try:
            updates = await api.get_updates(
                offset=next_offset,
                timeout_seconds=timeout_seconds,
            )
        except PlatformError as e:
            print(f"[red]Telegram poll error[/red]: {e}")
            await anyio.sleep(backoff_seconds)
            backoff_seconds = min(backoff_seconds * 2, _MAX_POLL_BACKOFF_SECONDS)
            continue

        backoff_seconds = 1.0
        if not updates:
            continue

        unseen_updates = filter_unseen_updates(
            updates,
            last_processed_update_id=last_consumed_update_id,
        )
        seen_chat_ids = sorted(
            {cid for update in updates if (cid := extract_chat_id(update)) is not None}
        )
        chat_ids_preview = seen_chat_ids[:5] + (["..."] if len(seen_chat_ids) > 5 else [])
        print(
            "[cyan]telegram recv[/cyan] "
            + f"updates={len(updates)} unseen={len(unseen_updates)} "
            + f"next_offset={next_offset} chats={chat_ids_preview or None}"
        )

        for raw in unseen_updates:
            await _submit_raw(dispatcher, raw)
            update_id = extract_update_id(raw)
            if update_id is not None and (
                last_consumed_update_id is None or update_id > last_consumed_update_id
            ):
                last_consumed_update_id = update_id

        if last_consumed_update_id is not None:
            next_offset = last_consumed_update_id + 1


def build_webhook_app(
    dispatcher: Dispatcher,
    *,
    path: str,
    secret: str | None = None,
) -> FastAPI:
    """HTTP app receiving Telegram webhook deliveries on `POST /{path}`."""

    app = FastAPI(title="golden-axe", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health", status_code=status.HTTP_204_NO_CONTENT)
    async def health() -> Response:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post(f"/{path}")
    async def receive_update(
        request: Request,
        x_telegram_bot_api_secret_token: str | None = Header(default=None),
    ) -> Response:
        if secret is not None and x_telegram_bot_api_secret_token != secret:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Bad secret")
        try:
            raw = await request.json()
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
        if not isinstance(raw, dict):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected an object")
        try:
            update = Update.from_telegram(raw)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
        if not await dispatcher.submit(update):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Shutting down"
            )
        return Response(status_code=status.HTTP_200_OK)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server stopped through `should_exit` instead of its own signal handlers."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


async def serve_webhook(
    api: TelegramBotApi,
    dispatcher: Dispatcher,
    reporter: DebugReporter,
    config: Config,
    *,
    path: str,
    stop: anyio.Event,
) -> None:
    """Register the webhook and serve it until `stop` is set."""

    assert config.domain is not None
    secret = secrets.token_urlsafe(32)
    url = f"https://{config.domain}/{path}"

    await api.delete_webhook()
    await anyio.sleep(_WEBHOOK_SETTLE_SECONDS)
    await api.set_webhook(url=url, secret_token=secret)
    reporter.notify(f"Webhook set to {url}")

    server = _EmbeddedServer(
        uvicorn.Config(
            build_webhook_app(dispatcher, path=path, secret=secret),
            host=config.webhook_host,
            port=config.webhook_port,
            log_config=None,
        )
    )
    async with anyio.create_task_group() as tg:
        tg.start_soon(server.serve)
        await stop.wait()
        server.should_exit = True


async def _watch_signals(stop: anyio.Event) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            print(f"[yellow]Received {signal.Signals(signum).name}, shutting down[/yellow]")
            stop.set()
            return


async def run_bot(config: Config) -> None:
    """Run the bot until SIGINT or SIGTERM, then shut down gracefully."""

    token = config.token.get_secret_value()
    api = TelegramBotApi(token=token)
    me = await api.get_me()
    bot_username = me.get("username") if isinstance(me.get("username"), str) else None
    await api.set_my_commands(list(COMMAND_DESCRIPTIONS))

    reporter = DebugReporter(api, config.debug_chat)
    registry = TitleRegistry()
    admins = AdminCache(api, ttl_seconds=config.admin_cache_ttl_seconds)
    gate = AuthorizationGate(admins, self_service=config.self_service)
    engine = TitleMutationEngine(
        api,
        gate,
        registry,
        policy=RetryPolicy(
            base_delay_seconds=config.retry_base_delay_seconds,
            multiplier=config.retry_multiplier,
            max_attempts=config.max_attempts,
        ),
        max_title_length=config.max_title_length,
    )
    dispatcher = Dispatcher(api, engine, reporter, bot_username=bot_username, workers=config.workers)
    this_run = run_hash(token)

    print(
        "\n".join(
            [
                "golden-axe running.",
                f"- mode: {config.mode}",
                f"- bot_username: {bot_username}",
                f"- run: #{this_run}",
                f"- workers: {config.workers}",
                f"- debug_chat: {config.debug_chat}",
            ]
        )
    )

    stop = anyio.Event()
    async with anyio.create_task_group() as outer:
        outer.start_soon(reporter.run)
        try:
            async with dispatcher:
                reporter.notify(f"Online (#{this_run})")
                async with anyio.create_task_group() as sources:
                    sources.start_soon(_watch_signals, stop)
                    if config.mode == "webhook":
                        sources.start_soon(
                            lambda: serve_webhook(
                                api, dispatcher, reporter, config, path=this_run, stop=stop
                            )
                        )
                        await stop.wait()
                    else:
                        sources.start_soon(
                            lambda: poll_forever(
                                api, dispatcher, timeout_seconds=config.poll_timeout_seconds
                            )
                        )
                        await stop.wait()
                        sources.cancel_scope.cancel()
        finally:
            reporter.notify("Offline")
            await reporter.aclose()
