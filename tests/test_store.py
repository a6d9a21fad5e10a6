"""
Tests for the document store adapters.

The Redis adapter is exercised against a mocked redis.asyncio client.
"""
import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError

from shiftplan.errors import StoreUnavailable
from shiftplan.store import InMemoryDocumentStore, RedisDocumentStore


async def _collect(iterator, count):
    items = []
    async for item in iterator:
        items.append(item)
        if len(items) == count:
            break
    return items


class TestInMemoryStore:
    """Test get/set/delete and subscriptions on the in-memory backend."""

    def test_get_set_delete(self, store):
        async def scenario():
            assert await store.get("appState/main") is None
            await store.set("appState/main", {'flights': []})
            assert await store.get("appState/main") == {'flights': []}
            await store.delete("appState/main")
            assert await store.get("appState/main") is None

        asyncio.run(scenario())

    def test_get_returns_copy(self, store):
        async def scenario():
            await store.set("doc", {'staff': ["A"]})
            document = await store.get("doc")
            document['staff'].append("B")
            return await store.get("doc")

        assert asyncio.run(scenario()) == {'staff': ["A"]}

    def test_subscribe_delivers_current_then_changes(self, backend, store):
        other = InMemoryDocumentStore(backend, client_id="client-b")

        async def scenario():
            await store.set("doc", {'v': 1})
            stream = store.subscribe("doc")
            first = await stream.__anext__()
            await other.set("doc", {'v': 2})
            await store.set("doc", {'v': 3})
            second = await stream.__anext__()
            third = await stream.__anext__()
            await stream.aclose()
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert [first[0], second[0], third[0]] == [{'v': 1}, {'v': 2}, {'v': 3}]
        assert first[1].from_cache is False

    def test_local_echoes_can_be_filtered(self, backend, store):
        other = InMemoryDocumentStore(backend, client_id="client-b")

        async def scenario():
            stream = store.subscribe("doc", include_local_echoes=False)
            await stream.__anext__()
            await store.set("doc", {'v': 'mine'})
            await other.set("doc", {'v': 'theirs'})
            document, _ = await stream.__anext__()
            await stream.aclose()
            return document

        assert asyncio.run(scenario()) == {'v': 'theirs'}

    def test_unsubscribes_on_close(self, backend, store):
        async def scenario():
            stream = store.subscribe("doc")
            await stream.__anext__()
            assert backend.subscriber_count("doc") == 1
            await stream.aclose()
            return backend.subscriber_count("doc")

        assert asyncio.run(scenario()) == 0

    def test_dropped_subscription_raises(self, backend, store):
        async def scenario():
            stream = store.subscribe("doc")
            await stream.__anext__()
            backend.drop_subscribers("doc")
            await stream.__anext__()

        with pytest.raises(StoreUnavailable):
            asyncio.run(scenario())

    def test_offline_backend(self, backend, store):
        backend.available = False
        with pytest.raises(StoreUnavailable):
            asyncio.run(store.set("doc", {}))

    def test_list_documents(self, backend, store):
        backend.documents.update({
            "statsArchive/2024-01-10": {"A": 1},
            "statsArchive/2024-01-09": {"A": 2},
            "statsArchive/old/2020-01-01": {"A": 3},
            "appState/main": {'flights': []},
        })

        documents = asyncio.run(store.list_documents("statsArchive"))

        assert documents == {"2024-01-10": {"A": 1}, "2024-01-09": {"A": 2}}


@pytest.fixture
def mock_redis():
    """Mock redis.asyncio client."""
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock()
    client.delete = AsyncMock()
    client.publish = AsyncMock()
    client.aclose = AsyncMock()
    return client


class TestRedisStore:
    """Test the Redis adapter against a mocked client."""

    def test_get_decodes_json(self, mock_redis):
        mock_redis.get.return_value = json.dumps({'lastMutationTimestamp': 5})
        store = RedisDocumentStore(client=mock_redis, client_id="me")

        assert asyncio.run(store.get("appState/main")) == {'lastMutationTimestamp': 5}
        mock_redis.get.assert_awaited_once_with("shiftplan:appState/main")

    def test_get_missing(self, mock_redis):
        store = RedisDocumentStore(client=mock_redis)
        assert asyncio.run(store.get("appState/main")) is None

    def test_set_writes_and_announces(self, mock_redis):
        store = RedisDocumentStore(client=mock_redis, client_id="me")
        asyncio.run(store.set("appState/main", {'staff': []}))

        mock_redis.set.assert_awaited_once_with("shiftplan:appState/main", json.dumps({'staff': []}))
        channel, message = mock_redis.publish.await_args.args
        assert channel == "shiftplan:appState/main:changes"
        assert json.loads(message) == {'origin': "me", 'document': {'staff': []}}

    def test_delete_announces_none(self, mock_redis):
        store = RedisDocumentStore(client=mock_redis, client_id="me")
        asyncio.run(store.delete("doc"))

        mock_redis.delete.assert_awaited_once_with("shiftplan:doc")
        _, message = mock_redis.publish.await_args.args
        assert json.loads(message)['document'] is None

    def test_redis_error_becomes_store_unavailable(self, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("refused")
        store = RedisDocumentStore(client=mock_redis)

        with pytest.raises(StoreUnavailable) as exc_info:
            asyncio.run(store.get("doc"))
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    def test_subscribe_filters_own_messages(self, mock_redis):
        messages = [
            {'type': 'subscribe', 'data': 1},
            {'type': 'message', 'data': json.dumps({'origin': "me", 'document': {'v': 1}})},
            {'type': 'message', 'data': "not json"},
            {'type': 'message', 'data': json.dumps({'origin': "other", 'document': {'v': 2}})},
        ]

        async def listen():
            for message in messages:
                yield message

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.listen = listen
        mock_redis.pubsub.return_value = pubsub
        mock_redis.get.return_value = json.dumps({'v': 0})
        store = RedisDocumentStore(client=mock_redis, client_id="me")

        async def scenario():
            stream = store.subscribe("doc", include_local_echoes=False)
            items = await _collect(stream, 2)
            await stream.aclose()
            return items

        items = asyncio.run(scenario())
        assert [document for document, _ in items] == [{'v': 0}, {'v': 2}]
        pubsub.subscribe.assert_awaited_once_with("shiftplan:doc:changes")
        pubsub.unsubscribe.assert_awaited_once_with("shiftplan:doc:changes")

    def test_malformed_json_becomes_store_unavailable(self, mock_redis):
        mock_redis.get.return_value = "{not json"
        store = RedisDocumentStore(client=mock_redis)

        with pytest.raises(StoreUnavailable):
            asyncio.run(store.get("appState/main"))

    def test_list_documents_scans_collection(self, mock_redis):
        keys = ["shiftplan:statsArchive/2024-01-10", "shiftplan:statsArchive/old/x", "shiftplan:statsArchive/2024-01-09"]

        async def scan_iter(match):
            for key in keys:
                yield key

        mock_redis.scan_iter = MagicMock(side_effect=scan_iter)
        mock_redis.mget = AsyncMock(return_value=[json.dumps({"A": 1}), None])
        store = RedisDocumentStore(client=mock_redis)

        documents = asyncio.run(store.list_documents("statsArchive"))

        assert documents == {"2024-01-10": {"A": 1}}
        mock_redis.scan_iter.assert_called_once_with(match="shiftplan:statsArchive/*")
        mock_redis.mget.assert_awaited_once_with(["shiftplan:statsArchive/2024-01-10", "shiftplan:statsArchive/2024-01-09"])

    def test_close(self, mock_redis):
        store = RedisDocumentStore(client=mock_redis)
        asyncio.run(store.close())
        mock_redis.aclose.assert_awaited_once()
