import pytest

from golden_axe.updates import (
    SeenUpdates,
    Update,
    extract_chat_id,
    extract_update_id,
    extract_user_id,
    filter_unseen_updates,
)


def test_extract_update_id() -> None:
    assert extract_update_id({"update_id": 1}) == 1
    assert extract_update_id({"update_id": "1"}) is None
    assert extract_update_id({"update_id": True}) is None
    assert extract_update_id({}) is None


def test_extract_ids_from_nested_payloads() -> None:
    member_update = {
        "update_id": 3,
        "chat_member": {"chat": {"id": -5}, "from": {"id": 8}},
    }

    assert extract_chat_id(member_update) == -5
    assert extract_user_id(member_update) == 8
    assert extract_chat_id({"update_id": 4}) is None


def test_filter_unseen_updates_skips_processed_and_duplicates() -> None:
    updates = [
        {"update_id": 9, "message": {"text": "old"}},
        {"update_id": 10, "message": {"text": "new-1"}},
        {"update_id": 10, "message": {"text": "dup"}},
        {"update_id": 11, "message": {"text": "new-2"}},
        {"update_id": "12", "message": {"text": "bad-id"}},
    ]

    res = filter_unseen_updates(updates, last_processed_update_id=9)
    assert [u["update_id"] for u in res] == [10, 11]


def test_update_from_telegram() -> None:
    raw = {
        "update_id": 42,
        "message": {
            "message_id": 1,
            "chat": {"id": -100, "type": "supergroup"},
            "from": {"id": 7},
            "text": "/help",
        },
    }

    update = Update.from_telegram(raw)

    assert (update.update_id, update.chat_id, update.user_id) == (42, -100, 7)
    assert update.chat_type == "supergroup"
    assert update.message == raw["message"]


def test_update_without_id_is_rejected() -> None:
    with pytest.raises(ValueError, match="update_id"):
        Update.from_telegram({"message": {"text": "hi"}})


def test_seen_updates_window_is_bounded() -> None:
    seen = SeenUpdates(capacity=2)

    assert seen.add(1) is True
    assert seen.add(1) is False
    assert seen.add(2) is True
    assert seen.add(3) is True

    assert 1 not in seen
    assert len(seen) == 2
    assert seen.add(1) is True
