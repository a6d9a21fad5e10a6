"""
Remote document store interface and adapters.

The store offers single-document get/set/delete plus a change subscription.
Subscriptions first deliver the current document, then every later change in
the order the store publishes them.
"""
import asyncio
import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shiftplan import config
from shiftplan.errors import StoreUnavailable

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass(frozen=True)
class SnapshotMetadata:
    from_cache: bool = False
    has_pending_writes: bool = False


Snapshot = Tuple[Optional[Document], SnapshotMetadata]


class DocumentStore(ABC):
    client_id: str

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def set(self, path: str, document: Document) -> None:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    async def list_documents(self, collection: str) -> Dict[str, Document]:
        """Every document directly under collection, keyed by document id."""
        ...

    @abstractmethod
    def subscribe(self, path: str, include_local_echoes: bool = True) -> AsyncIterator[Snapshot]:
        ...

    async def close(self) -> None:
        return None


_DROPPED = object()


class InMemoryBackend:
    """Shared state behind any number of InMemoryDocumentStore clients."""

    def __init__(self):
        self.documents: Dict[str, Document] = {}
        self.available = True
        self._subscribers: Dict[str, List[Tuple[str, bool, asyncio.Queue]]] = {}

    def add_subscriber(self, path: str, entry: Tuple[str, bool, asyncio.Queue]) -> None:
        self._subscribers.setdefault(path, []).append(entry)

    def remove_subscriber(self, path: str, entry: Tuple[str, bool, asyncio.Queue]) -> None:
        entries = self._subscribers.get(path, [])
        if entry in entries:
            entries.remove(entry)

    def subscriber_count(self, path: str) -> int:
        return len(self._subscribers.get(path, []))

    def publish(self, path: str, origin: str, document: Optional[Document]) -> None:
        for client_id, include_local_echoes, queue in list(self._subscribers.get(path, [])):
            if client_id == origin and not include_local_echoes:
                continue
            queue.put_nowait(copy.deepcopy(document))

    def drop_subscribers(self, path: str) -> None:
        """Break every open subscription on path, as a lost connection would."""
        for _, _, queue in list(self._subscribers.get(path, [])):
            queue.put_nowait(_DROPPED)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, backend: Optional[InMemoryBackend] = None, client_id: Optional[str] = None):
        self.backend = backend or InMemoryBackend()
        self.client_id = client_id or str(uuid.uuid4())

    def _check(self, operation: str, path: str) -> None:
        if not self.backend.available:
            raise StoreUnavailable(operation, path, "backend offline")

    async def get(self, path: str) -> Optional[Document]:
        self._check('get', path)
        return copy.deepcopy(self.backend.documents.get(path))

    async def set(self, path: str, document: Document) -> None:
        self._check('set', path)
        self.backend.documents[path] = copy.deepcopy(document)
        self.backend.publish(path, self.client_id, document)

    async def delete(self, path: str) -> None:
        self._check('delete', path)
        self.backend.documents.pop(path, None)
        self.backend.publish(path, self.client_id, None)

    async def list_documents(self, collection: str) -> Dict[str, Document]:
        self._check('list', collection)
        prefix = f"{collection}/"
        return {
            path[len(prefix):]: copy.deepcopy(document)
            for path, document in self.backend.documents.items()
            if path.startswith(prefix) and '/' not in path[len(prefix):]
        }

    async def subscribe(self, path: str, include_local_echoes: bool = True) -> AsyncIterator[Snapshot]:
        self._check('subscribe', path)
        queue: asyncio.Queue = asyncio.Queue()
        entry = (self.client_id, include_local_echoes, queue)
        self.backend.add_subscriber(path, entry)
        try:
            yield copy.deepcopy(self.backend.documents.get(path)), SnapshotMetadata()
            while True:
                document = await queue.get()
                if document is _DROPPED:
                    raise StoreUnavailable('subscribe', path, "connection dropped")
                yield document, SnapshotMetadata()
        finally:
            self.backend.remove_subscriber(path, entry)


class RedisDocumentStore(DocumentStore):
    """
    Documents are JSON strings under '<prefix><path>'; every write is announced
    on the '<key>:changes' channel as {"origin": client_id, "document": ...}.
    """

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None,
                 client_id: Optional[str] = None, key_prefix: str = "shiftplan:"):
        self.client = client or redis.Redis.from_url(
            url or config.get_redis_url(),
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        self.client_id = client_id or str(uuid.uuid4())
        self.key_prefix = key_prefix

    def _key(self, path: str) -> str:
        return f"{self.key_prefix}{path}"

    def _channel(self, path: str) -> str:
        return f"{self._key(path)}:changes"

    async def _announce(self, path: str, document: Optional[Document]) -> None:
        message = json.dumps({'origin': self.client_id, 'document': document})
        await self.client.publish(self._channel(path), message)

    async def get(self, path: str) -> Optional[Document]:
        try:
            raw = await self.client.get(self._key(path))
        except RedisError as e:
            logger.error(f"[store] Redis get failed for {path}: {str(e)}")
            raise StoreUnavailable('get', path, str(e)) from e
        if raw is None:
            return None
        return self._decode(path, raw)

    def _decode(self, path: str, raw: str) -> Document:
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"[store] Malformed JSON stored at {path}: {str(e)}")
            raise StoreUnavailable('get', path, "malformed document") from e

    async def set(self, path: str, document: Document) -> None:
        try:
            await self.client.set(self._key(path), json.dumps(document))
            await self._announce(path, document)
        except RedisError as e:
            logger.error(f"[store] Redis set failed for {path}: {str(e)}")
            raise StoreUnavailable('set', path, str(e)) from e

    async def delete(self, path: str) -> None:
        try:
            await self.client.delete(self._key(path))
            await self._announce(path, None)
        except RedisError as e:
            logger.error(f"[store] Redis delete failed for {path}: {str(e)}")
            raise StoreUnavailable('delete', path, str(e)) from e

    async def list_documents(self, collection: str) -> Dict[str, Document]:
        prefix = self._key(f"{collection}/")
        try:
            keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
            keys = [key for key in keys if '/' not in key[len(prefix):]]
            values = await self.client.mget(keys) if keys else []
        except RedisError as e:
            logger.error(f"[store] Redis scan failed for {collection}: {str(e)}")
            raise StoreUnavailable('list', collection, str(e)) from e
        documents = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            path = key[len(self.key_prefix):]
            documents[key[len(prefix):]] = self._decode(path, raw)
        return documents

    async def subscribe(self, path: str, include_local_echoes: bool = True) -> AsyncIterator[Snapshot]:
        channel = self._channel(path)
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"[store] Subscribed to {channel}")
            yield await self.get(path), SnapshotMetadata()
            async for message in pubsub.listen():
                if message.get('type') != 'message':
                    continue
                try:
                    payload = json.loads(message['data'])
                except json.JSONDecodeError:
                    logger.warning(f"[store] Ignoring malformed change message on {channel}")
                    continue
                if payload.get('origin') == self.client_id and not include_local_echoes:
                    continue
                yield payload.get('document'), SnapshotMetadata()
        except RedisError as e:
            logger.error(f"[store] Subscription to {channel} failed: {str(e)}")
            raise StoreUnavailable('subscribe', path, str(e)) from e
        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except RedisError as e:
                logger.warning(f"[store] Failed to close subscription {channel}: {str(e)}")

    async def close(self) -> None:
        await self.client.aclose()
