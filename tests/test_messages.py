import pytest

from apps.api.messages import (
    MessageStore,
    message_serialized_id,
    message_short_id,
    resolve_message,
)

from fakes import FakeChat, FakeClient, make_message


def test_message_ids():
    msg = make_message("ABC")
    assert message_short_id(msg) == "ABC"
    assert message_serialized_id(msg) == "true_123@c.us_ABC"
    assert message_short_id({"id": "raw"}) == "raw"
    assert message_serialized_id({"id": {"serialized": "x_y"}}) == "x_y"
    assert message_serialized_id(None) is None


@pytest.mark.asyncio
async def test_resolve_message_searches_recent_history_only():
    history = [make_message(f"M{i}") for i in range(150)]
    chat = FakeChat(history)
    client = FakeClient(None)
    client.chats["123@c.us"] = chat

    found = await resolve_message(client, "123@c.us", "M120")
    assert found is history[120]
    assert chat.fetch_limits == [100]

    assert await resolve_message(client, "123@c.us", "M10") is None
    assert await resolve_message(client, "123@c.us", "missing") is None


@pytest.mark.asyncio
async def test_store_upserts_message_records(tmp_path):
    store = MessageStore(tmp_path / "messages")
    msg = make_message("A1")

    await store.upsert_message("s1", msg)
    record = await store.get_message("s1", "true_123@c.us_A1")
    assert record["body"] == "body A1"
    assert record["sessionId"] == "s1"
    assert record["messageId"] == "true_123@c.us_A1"
    assert record["from"] == "123@c.us"

    msg.body = "edited"
    await store.upsert_message("s1", msg)
    record = await store.get_message("s1", "true_123@c.us_A1")
    assert record["body"] == "edited"
    assert (tmp_path / "messages" / "s1.json").exists()


@pytest.mark.asyncio
async def test_store_upserts_media_with_message(tmp_path):
    store = MessageStore(tmp_path / "messages")
    msg = make_message("P1", msg_type="image", has_media=True)

    await store.upsert_media("s1", msg, {"mimetype": "image/png", "data": "aGVsbG8="})

    media = await store.get_media("s1", "true_123@c.us_P1")
    assert media["mimetype"] == "image/png"
    assert media["messageId"] == "true_123@c.us_P1"
    assert (await store.get_message("s1", "true_123@c.us_P1"))["type"] == "image"


@pytest.mark.asyncio
async def test_store_lookups_on_empty_session(tmp_path):
    store = MessageStore(tmp_path / "messages")
    assert await store.get_message("nobody", "x") is None
    assert await store.get_media("nobody", "x") is None
