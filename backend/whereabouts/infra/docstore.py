"""Document store adapter backed by Redis.

Documents are JSON objects stored under ``{prefix}:{kind}:{id}`` with a per-kind
index set used for enumeration and queries. Every committed write is announced on
a per-kind pub/sub channel; subscriptions re-read their target when notified, so a
stream always reflects the latest committed state in commit order.

Supported update operations:
- plain values replace the field
- ``add_to_set(*values)`` / ``remove_from_set(*values)`` apply set semantics to a
  list field (adding a present value or removing an absent one is a no-op)
- ``server_timestamp()`` resolves to the Redis server clock at commit time
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from redis.exceptions import RedisError, WatchError

from whereabouts.infra.redis import RedisProxy, redis_client
from whereabouts.obs import metrics as obs_metrics
from whereabouts.settings import settings

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
	"""Raised when the store (or its transport) fails a call."""

	reason = "store_unavailable"


class DocumentMissing(LookupError):
	"""Raised when a partial update targets a document that does not exist."""

	def __init__(self, kind: str, doc_id: str) -> None:
		super().__init__(f"{kind}/{doc_id}")
		self.kind = kind
		self.doc_id = doc_id


@dataclass(frozen=True)
class AddToSet:
	values: Tuple[Any, ...]


@dataclass(frozen=True)
class RemoveFromSet:
	values: Tuple[Any, ...]


class _ServerTimestamp:
	def __repr__(self) -> str:
		return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


def add_to_set(*values: Any) -> AddToSet:
	return AddToSet(tuple(values))


def remove_from_set(*values: Any) -> RemoveFromSet:
	return RemoveFromSet(tuple(values))


def server_timestamp() -> _ServerTimestamp:
	return SERVER_TIMESTAMP


@dataclass(frozen=True)
class Document:
	id: str
	data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Query:
	"""Single-field filter over one document kind."""

	field: str
	op: Literal["==", "in"]
	value: Any

	@classmethod
	def equals(cls, field_name: str, value: Any) -> "Query":
		return cls(field_name, "==", value)

	@classmethod
	def membership(cls, field_name: str, values: Iterable[Any]) -> "Query":
		return cls(field_name, "in", tuple(values))

	def matches(self, data: Mapping[str, Any]) -> bool:
		if self.field not in data:
			return False
		current = data[self.field]
		if self.op == "==":
			return current == self.value
		return current in self.value


OnNext = Callable[[Any], Union[Awaitable[None], None]]
OnError = Callable[[StoreUnavailable], Union[Awaitable[None], None]]


def _apply_fields(current: Dict[str, Any], fields: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
	data = dict(current)
	for key, value in fields.items():
		if isinstance(value, AddToSet):
			existing = list(data.get(key) or [])
			for item in value.values:
				if item not in existing:
					existing.append(item)
			data[key] = existing
		elif isinstance(value, RemoveFromSet):
			data[key] = [item for item in (data.get(key) or []) if item not in value.values]
		elif value is SERVER_TIMESTAMP:
			data[key] = now.isoformat()
		else:
			data[key] = value
	return data


def _decode(doc_id: str, raw: Optional[str]) -> Optional[Document]:
	if raw is None:
		return None
	return Document(id=doc_id, data=json.loads(raw))


@asynccontextmanager
async def _store_call(op: str):
	try:
		yield
	except RedisError as exc:
		obs_metrics.inc_docstore_op(op, "error")
		raise StoreUnavailable(f"{op} failed: {exc}") from exc
	obs_metrics.inc_docstore_op(op)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
	result = callback(*args)
	if inspect.isawaitable(result):
		await result


class RedisDocumentStore:
	"""Generic document store consumed by the presence engine."""

	def __init__(self, client: RedisProxy | None = None, *, membership_cap: int | None = None) -> None:
		self._client = client or redis_client
		self._prefix = settings.docstore_prefix
		self._membership_cap = membership_cap or settings.membership_query_cap

	@property
	def membership_cap(self) -> int:
		return self._membership_cap

	def _doc_key(self, kind: str, doc_id: str) -> str:
		return f"{self._prefix}:{kind}:{doc_id}"

	def _index_key(self, kind: str) -> str:
		return f"{self._prefix}:idx:{kind}"

	def channel(self, kind: str) -> str:
		return f"{self._prefix}:chan:{kind}"

	async def _now(self) -> datetime:
		seconds = await self._client.server_time()
		return datetime.fromtimestamp(seconds, tz=timezone.utc)

	async def _publish(self, kind: str, doc_id: str) -> None:
		await self._client.publish(self.channel(kind), json.dumps({"id": doc_id}))

	async def get_document(self, kind: str, doc_id: str) -> Optional[Document]:
		async with _store_call("get"):
			raw = await self._client.get(self._doc_key(kind, doc_id))
		return _decode(doc_id, raw)

	async def set_document(self, kind: str, doc_id: str, fields: Mapping[str, Any]) -> Document:
		"""Replace the whole document."""
		async with _store_call("set"):
			data = _apply_fields({}, fields, await self._now())
			async with self._client.pipeline(transaction=True) as pipe:
				pipe.set(self._doc_key(kind, doc_id), json.dumps(data))
				pipe.sadd(self._index_key(kind), doc_id)
				await pipe.execute()
			await self._publish(kind, doc_id)
		return Document(id=doc_id, data=data)

	async def update_fields(self, kind: str, doc_id: str, fields: Mapping[str, Any]) -> Document:
		"""Merge ``fields`` into an existing document atomically."""
		key = self._doc_key(kind, doc_id)
		attempts = max(1, settings.docstore_watch_retries)
		async with _store_call("update"):
			now = await self._now()
			for _ in range(attempts):
				async with self._client.pipeline(transaction=True) as pipe:
					try:
						await pipe.watch(key)
						raw = await pipe.get(key)
						if raw is None:
							raise DocumentMissing(kind, doc_id)
						data = _apply_fields(json.loads(raw), fields, now)
						pipe.multi()
						pipe.set(key, json.dumps(data))
						await pipe.execute()
					except WatchError:
						obs_metrics.inc_watch_conflict()
						continue
				await self._publish(kind, doc_id)
				return Document(id=doc_id, data=data)
		raise StoreUnavailable(f"update of {kind}/{doc_id} lost {attempts} races in a row")

	async def list_documents(self, kind: str) -> List[Document]:
		"""Enumerate every document of ``kind`` in id order (O(n) in the kind's size)."""
		async with _store_call("list"):
			ids = sorted(await self._client.smembers(self._index_key(kind)))
			if not ids:
				return []
			raws = await self._client.mget([self._doc_key(kind, doc_id) for doc_id in ids])
		return [doc for doc in (_decode(doc_id, raw) for doc_id, raw in zip(ids, raws)) if doc is not None]

	def _check_query(self, query: Query) -> None:
		if query.op != "in":
			return
		if not query.value:
			raise ValueError("membership query needs at least one value")
		if len(query.value) > self._membership_cap:
			raise ValueError(f"membership query accepts at most {self._membership_cap} values")

	async def run_query(self, kind: str, query: Query) -> List[Document]:
		self._check_query(query)
		return [doc for doc in await self.list_documents(kind) if query.matches(doc.data)]

	async def query_equals(self, kind: str, field_name: str, value: Any) -> List[Document]:
		return await self.run_query(kind, Query.equals(field_name, value))

	async def query_membership(self, kind: str, field_name: str, values: Iterable[Any]) -> List[Document]:
		return await self.run_query(kind, Query.membership(field_name, values))

	async def subscribe_document(
		self,
		kind: str,
		doc_id: str,
		on_next: OnNext,
		on_error: OnError | None = None,
	) -> "Subscription":
		"""Stream ``Document | None`` for one document until closed."""

		async def fetch() -> Optional[Document]:
			return await self.get_document(kind, doc_id)

		def relevant(changed_id: str) -> bool:
			return changed_id == doc_id

		subscription = Subscription(
			"document",
			self._client,
			self.channel(kind),
			fetch,
			relevant,
			on_next,
			on_error,
		)
		await subscription.start()
		return subscription

	async def subscribe_query(
		self,
		kind: str,
		query: Query,
		on_next: OnNext,
		on_error: OnError | None = None,
	) -> "Subscription":
		"""Stream the matching ``list[Document]`` whenever the result set changes."""
		self._check_query(query)

		async def fetch() -> List[Document]:
			return await self.run_query(kind, query)

		subscription = Subscription(
			"query",
			self._client,
			self.channel(kind),
			fetch,
			lambda _changed_id: True,
			on_next,
			on_error,
		)
		await subscription.start()
		return subscription


class Subscription:
	"""Live stream over one document or query, owned by exactly one scope.

	The first emission is the current snapshot. Afterwards the target is re-read
	whenever a write to its kind is announced, and emitted when it changed. A store
	failure is reported to ``on_error`` once; the stream then waits and
	re-establishes itself, emitting a fresh snapshot on recovery.
	"""

	def __init__(
		self,
		target: str,
		client: RedisProxy,
		channel: str,
		fetch: Callable[[], Awaitable[Any]],
		relevant: Callable[[str], bool],
		on_next: OnNext,
		on_error: OnError | None,
	) -> None:
		self.target = target
		self._client = client
		self._channel = channel
		self._fetch = fetch
		self._relevant = relevant
		self._on_next = on_next
		self._on_error = on_error
		self._ready = asyncio.Event()
		self._task: Optional[asyncio.Task] = None
		self._closed = False
		self._last: Any = None
		self._emitted = False

	@property
	def closed(self) -> bool:
		return self._closed

	async def start(self) -> None:
		"""Start streaming and wait for the first snapshot (or first failure)."""
		obs_metrics.subscription_opened(self.target)
		self._task = asyncio.create_task(self._run(), name=f"docstore-subscription:{self._channel}")
		waiter = asyncio.create_task(self._ready.wait())
		try:
			await asyncio.wait({waiter, self._task}, return_when=asyncio.FIRST_COMPLETED)
		except asyncio.CancelledError:
			# The owning scope went away mid-start; do not leave the stream behind.
			self._closed = True
			obs_metrics.subscription_closed(self.target)
			self._task.cancel()
			raise
		finally:
			waiter.cancel()

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		obs_metrics.subscription_closed(self.target)
		task = self._task
		if task is None:
			return
		task.cancel()
		if task is asyncio.current_task():
			return
		with suppress(asyncio.CancelledError):
			await task

	async def _emit(self, force: bool = False) -> None:
		value = await self._fetch()
		if not force and self._emitted and value == self._last:
			return
		self._last = value
		self._emitted = True
		try:
			await _invoke(self._on_next, value)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("subscription consumer failed for %s", self._channel)

	async def _run(self) -> None:
		while not self._closed:
			pubsub = self._client.pubsub()
			try:
				await pubsub.subscribe(self._channel)
				# Snapshot only after subscribing so no commit falls in between.
				await self._emit(force=True)
				self._ready.set()
				while not self._closed:
					message = await pubsub.get_message(
						ignore_subscribe_messages=True,
						timeout=settings.subscription_poll_seconds,
					)
					if message is None:
						continue
					try:
						changed_id = json.loads(message["data"]).get("id", "")
					except (TypeError, ValueError):
						logger.debug("ignoring malformed change notice on %s", self._channel)
						continue
					if self._relevant(str(changed_id)):
						await self._emit()
			except asyncio.CancelledError:
				raise
			except (RedisError, StoreUnavailable, ValueError) as exc:
				# ValueError: a stored blob that is not valid JSON.
				obs_metrics.inc_subscription_error(self.target)
				logger.warning("subscription on %s interrupted: %s", self._channel, exc)
				self._ready.set()
				if self._on_error is not None:
					if isinstance(exc, StoreUnavailable):
						error = exc
					elif isinstance(exc, ValueError):
						error = StoreUnavailable(f"unreadable snapshot: {exc}")
					else:
						error = StoreUnavailable(str(exc))
					try:
						await _invoke(self._on_error, error)
					except Exception:
						logger.exception("subscription error handler failed for %s", self._channel)
				await asyncio.sleep(max(0.01, settings.subscription_retry_seconds))
			finally:
				with suppress(RedisError):
					await pubsub.unsubscribe()
				with suppress(RedisError):
					await pubsub.aclose()


__all__ = [
	"AddToSet",
	"Document",
	"DocumentMissing",
	"Query",
	"RedisDocumentStore",
	"RemoveFromSet",
	"SERVER_TIMESTAMP",
	"StoreUnavailable",
	"Subscription",
	"add_to_set",
	"remove_from_set",
	"server_timestamp",
]
