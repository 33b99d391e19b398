"""Command variants and the update -> command parser.

`Command` is a closed union; the dispatcher narrows it with `isinstance` and
ends with `assert_never` so a new variant fails type checking where it is not
handled.

Recognized syntax (case-insensitive command names, optional `@BotName`):
- `/title <text>`: set a title on the replied-to member, or on the issuer.
- `/cleartitle`: remove a title from the replied-to member, or the issuer.
- `/demote`: like `/cleartitle`, but also drops the admin rights.
- `/anonymous`: make the issuer an anonymous admin. Needs a title set
  through `/title` first.
- `/deanonymous`: sent by an anonymous admin; the message's author signature
  (their title) identifies who to make visible again.
- `/titles`: list titles known to this process.
- `/help`: list commands.

The parser only checks structure. Title length and uniqueness are policy and
belong to the mutation engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Final

from golden_axe.updates import Update

COMMAND_DESCRIPTIONS: Final[tuple[tuple[str, str], ...]] = (
    ("help", "Display this text."),
    ("title", "Change a title (reply to someone to change theirs)."),
    ("cleartitle", "Remove a title (reply to someone to remove theirs)."),
    ("demote", "Remove a title together with the admin rights it needed."),
    ("anonymous", "Make me anonymous."),
    ("deanonymous", "Make me un-anonymous."),
    ("titles", "Get all titles being used."),
)

_COMMAND_RE: Final[re.Pattern[str]] = re.compile(
    r"^/(?P<name>[A-Za-z0-9_]+)(?:@(?P<bot>[A-Za-z0-9_]+))?(?:\s+(?P<args>.*))?$",
    re.DOTALL,
)
_GROUP_CHAT_TYPES: Final[frozenset[str]] = frozenset({"group", "supergroup"})


@dataclass(frozen=True, slots=True)
class SetTitle:
    chat_id: int
    issuer_id: int
    target_id: int
    title: str
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class ClearTitle:
    chat_id: int
    issuer_id: int
    target_id: int
    demote: bool = False
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class SetAnonymous:
    """Toggle whether `target_id` posts anonymously. Always self-targeted."""

    chat_id: int
    issuer_id: int
    target_id: int
    anonymous: bool = True
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class Deanonymize:
    """`/deanonymous` from an anonymous admin, known only by their signature."""

    chat_id: int
    signature: str
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class ListTitles:
    chat_id: int
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class ShowHelp:
    chat_id: int
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class Malformed:
    """A recognized command that cannot be executed as written."""

    chat_id: int
    reason: str
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class Unrecognized:
    """Noise: ordinary chat traffic, service updates, other bots' commands."""


type Mutation = SetTitle | ClearTitle | SetAnonymous
type Command = (
    SetTitle
    | ClearTitle
    | SetAnonymous
    | Deanonymize
    | ListTitles
    | ShowHelp
    | Malformed
    | Unrecognized
)

UNRECOGNIZED: Final[Unrecognized] = Unrecognized()


def help_text() -> str:
    lines = ["These commands are supported:"]
    lines.extend(f"/{name} - {description}" for name, description in COMMAND_DESCRIPTIONS)
    return "\n".join(lines)


def _reply_target(message: dict[str, Any]) -> tuple[bool, int | None]:
    """Return `(is_reply, target_user_id)` for a command message.

    In forum supergroups every message without an explicit reply carries a
    `reply_to_message` pointing at the topic's `forum_topic_created` service
    message. That is not a reply to a person.
    """

    reply = message.get("reply_to_message")
    if not isinstance(reply, dict) or isinstance(reply.get("forum_topic_created"), dict):
        return False, None
    if isinstance(reply.get("sender_chat"), dict):
        # Posted on behalf of a channel or an anonymous admin.
        return True, None
    sender = reply.get("from")
    if not isinstance(sender, dict) or not isinstance(sender.get("id"), int):
        return True, None
    return True, sender["id"]


def parse(update: Update, *, bot_username: str | None = None) -> Command:
    """Classify `update` into a `Command`."""

    message = update.message
    if message is None:
        return UNRECOGNIZED
    text = message.get("text")
    if not isinstance(text, str):
        return UNRECOGNIZED

    m = _COMMAND_RE.match(text.strip())
    if m is None:
        return UNRECOGNIZED
    addressed_to = m["bot"]
    if (
        addressed_to is not None
        and bot_username is not None
        and addressed_to.lower() != bot_username.lower()
    ):
        return UNRECOGNIZED

    name = m["name"].lower()
    if name not in {n for n, _ in COMMAND_DESCRIPTIONS}:
        return UNRECOGNIZED

    chat_id = update.chat_id
    if chat_id is None:
        return UNRECOGNIZED
    message_id = message.get("message_id")
    if not isinstance(message_id, int):
        message_id = None

    if name == "help":
        return ShowHelp(chat_id=chat_id, message_id=message_id)
    if update.chat_type not in _GROUP_CHAT_TYPES:
        return Malformed(
            chat_id=chat_id,
            reason="This command can only be used in group",
            message_id=message_id,
        )
    if name == "titles":
        return ListTitles(chat_id=chat_id, message_id=message_id)

    # Anonymous admins post on behalf of the chat itself.
    sender_chat = message.get("sender_chat")
    anonymous_sender = isinstance(sender_chat, dict) and sender_chat.get("id") == chat_id
    if name == "deanonymous":
        if not anonymous_sender:
            return Malformed(
                chat_id=chat_id, reason="You are not anonymous", message_id=message_id
            )
        signature = message.get("author_signature")
        if not isinstance(signature, str) or not signature:
            return Malformed(
                chat_id=chat_id,
                reason="You don't have a title. Unable to identify you.",
                message_id=message_id,
            )
        return Deanonymize(chat_id=chat_id, signature=signature, message_id=message_id)
    if name == "anonymous" and anonymous_sender:
        return Malformed(
            chat_id=chat_id, reason="You are already anonymous", message_id=message_id
        )

    issuer_id = update.user_id
    if issuer_id is None or isinstance(sender_chat, dict):
        return Malformed(
            chat_id=chat_id,
            reason="I can't tell who you are. Anonymous admins can't use this command.",
            message_id=message_id,
        )
    if name == "anonymous":
        return SetAnonymous(
            chat_id=chat_id, issuer_id=issuer_id, target_id=issuer_id, message_id=message_id
        )

    is_reply, replied_user = _reply_target(message)
    if is_reply and replied_user is None:
        return Malformed(
            chat_id=chat_id,
            reason="I can't tell who sent the message you replied to.",
            message_id=message_id,
        )
    target_id = replied_user if replied_user is not None else issuer_id

    if name == "title":
        title = m["args"] or ""
        if not title.strip():
            return Malformed(
                chat_id=chat_id, reason="Title cannot be empty", message_id=message_id
            )
        return SetTitle(
            chat_id=chat_id,
            issuer_id=issuer_id,
            target_id=target_id,
            title=title,
            message_id=message_id,
        )
    return ClearTitle(
        chat_id=chat_id,
        issuer_id=issuer_id,
        target_id=target_id,
        demote=name == "demote",
        message_id=message_id,
    )
