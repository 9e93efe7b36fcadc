"""Async websocket client for a set of Nostr relays.

Three operations, each fanned out to every given relay concurrently:

- ``publish``: send one envelope, collect each relay's ``OK``.
- ``query``: one-shot ``REQ`` that stops at ``EOSE``.
- ``subscribe``: long-lived ``REQ`` delivering envelopes to a callback.

The pool does no retrying, deduplication or reconnection; callers decide
their own policy. Live subscriptions are kept in ``RelayPool.subscriptions``
keyed by subscription id.
"""

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import aiohttp
import httpx

from ..config import RelayConfig
from ..errors import ParseFailure, RelayError
from .event import Envelope

logger = logging.getLogger(__name__)

Filter = dict[str, Any]
EnvelopeCallback = Callable[[Envelope], Awaitable[None] | None]
EndOfStreamCallback = Callable[[str], Awaitable[None] | None]


class RelayClosed(RelayError):
    """The relay closed the websocket."""


@dataclass
class PublishOutcome:
    """Result of publishing one envelope to one relay."""

    relay: str
    accepted: bool
    message: str = ""
    error: str | None = None


def new_subscription_id() -> str:
    return uuid.uuid4().hex[:16]


def _http_url(relay_url: str) -> str:
    """Map a ws(s) relay URL to the http(s) URL serving its NIP-11 document."""
    if relay_url.startswith("wss://"):
        return "https://" + relay_url[len("wss://"):]
    if relay_url.startswith("ws://"):
        return "http://" + relay_url[len("ws://"):]
    return relay_url


async def invoke_callback(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class RelayConnection:
    """One websocket to one relay, speaking JSON arrays."""

    def __init__(self, url: str, ws: aiohttp.ClientWebSocketResponse):
        self.url = url
        self._ws = ws

    async def send(self, message: list[Any]) -> None:
        await self._ws.send_str(json.dumps(message, ensure_ascii=False))

    async def receive(self) -> list[Any] | None:
        """Next relay message, or None for a frame that is not a JSON array.

        Raises:
            RelayClosed: If the websocket is closed.
        """
        msg = await self._ws.receive()

        if msg.type == aiohttp.WSMsgType.TEXT:
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                logger.debug(f"Non-JSON frame from {self.url}: {msg.data[:100]}")
                return None
            if isinstance(data, list) and data:
                return data
            return None

        if msg.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
            aiohttp.WSMsgType.ERROR,
        ):
            raise RelayClosed(f"Relay {self.url} closed the connection")

        return None

    async def close(self) -> None:
        await self._ws.close()


class Subscription:
    """A long-lived filtered subscription across several relays."""

    def __init__(
        self,
        subscription_id: str,
        relays: list[str],
        filters: list[Filter],
        pool: "RelayPool",
    ):
        self.id = subscription_id
        self.relays = list(relays)
        self.filters = list(filters)
        self._pool = pool
        self._tasks: list[asyncio.Task] = []

    def start(
        self,
        on_envelope: EnvelopeCallback,
        on_end_of_stream: EndOfStreamCallback | None = None,
    ) -> None:
        for url in self.relays:
            task = asyncio.create_task(
                self._run(url, on_envelope, on_end_of_stream),
                name=f"sub-{self.id}-{url}",
            )
            task.add_done_callback(self._task_done)
            self._tasks.append(task)

    async def _run(
        self,
        url: str,
        on_envelope: EnvelopeCallback,
        on_end_of_stream: EndOfStreamCallback | None,
    ) -> None:
        try:
            conn = await self._pool._connect(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Subscription {self.id}: cannot connect to {url}: {e}")
            return

        try:
            await conn.send(["REQ", self.id, *self.filters])
            logger.info(f"Subscription {self.id} opened on {url}")

            while True:
                message = await conn.receive()
                if message is None or len(message) < 2 or message[1] != self.id:
                    if message and message[0] == "NOTICE":
                        logger.info(f"Notice from {url}: {message[1:]}")
                    continue

                if message[0] == "EVENT" and len(message) > 2:
                    try:
                        envelope = Envelope.from_dict(message[2])
                    except ParseFailure as e:
                        logger.warning(f"Subscription {self.id}: dropping event from {url}: {e}")
                        continue
                    try:
                        await invoke_callback(on_envelope, envelope)
                    except Exception:
                        logger.exception(
                            f"Subscription {self.id}: handler failed for event {envelope.id}"
                        )
                elif message[0] == "EOSE":
                    logger.debug(f"Subscription {self.id}: end of stored events from {url}")
                    if on_end_of_stream is not None:
                        try:
                            await invoke_callback(on_end_of_stream, url)
                        except Exception:
                            logger.exception(f"Subscription {self.id}: EOSE handler failed")
                elif message[0] == "CLOSED":
                    logger.warning(f"Subscription {self.id} closed by {url}: {message[2:]}")
                    break

        except RelayClosed as e:
            logger.warning(f"Subscription {self.id}: {e}")
        except aiohttp.ClientError as e:
            logger.warning(f"Subscription {self.id}: connection error on {url}: {e}")
        finally:
            await self._pool._close_quietly(conn, self.id)

    def cancel(self) -> None:
        """Tear the subscription down on every relay."""
        for task in self._tasks:
            task.cancel()
        self._detach()
        logger.info(f"Subscription {self.id} cancelled")

    def _task_done(self, task: asyncio.Task) -> None:
        if not self.active:
            self._detach()

    def _detach(self) -> None:
        # a replacement may already hold this id
        if self._pool.subscriptions.get(self.id) is self:
            del self._pool.subscriptions[self.id]

    async def wait_closed(self) -> None:
        """Wait until every relay task has finished."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    @property
    def active(self) -> bool:
        return any(not task.done() for task in self._tasks)


class RelayPool:
    """Publish, query and subscribe against many relays."""

    def __init__(self, config: RelayConfig | None = None):
        self.config = config or RelayConfig()
        self._session: aiohttp.ClientSession | None = None
        self.subscriptions: dict[str, Subscription] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the websocket session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _connect(self, url: str) -> RelayConnection:
        session = await self._get_session()
        ws = await asyncio.wait_for(
            session.ws_connect(url, heartbeat=30.0),
            timeout=self.config.connect_timeout_seconds,
        )
        return RelayConnection(url, ws)

    async def _close_quietly(self, conn: RelayConnection, subscription_id: str | None) -> None:
        """Send CLOSE for a subscription, then close the socket."""
        try:
            if subscription_id is not None:
                await conn.send(["CLOSE", subscription_id])
            await conn.close()
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.debug(f"Error closing connection to {conn.url}: {e}")

    # ==================== Publish ====================

    async def publish(self, relays: list[str], envelope: Envelope) -> list[PublishOutcome]:
        """Send an envelope to every relay.

        Returns:
            One PublishOutcome per relay, in the order given.
        """
        if not relays:
            return []

        outcomes = await asyncio.gather(
            *(self._publish_one(url, envelope) for url in relays)
        )
        accepted = sum(1 for o in outcomes if o.accepted)
        logger.info(
            f"Published {envelope.id[:12]} (kind {envelope.kind}): "
            f"{accepted}/{len(outcomes)} relays accepted"
        )
        return list(outcomes)

    async def _publish_one(self, url: str, envelope: Envelope) -> PublishOutcome:
        try:
            conn = await self._connect(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Cannot connect to {url}: {e}")
            return PublishOutcome(relay=url, accepted=False, error=f"connect failed: {e}")

        try:
            await conn.send(["EVENT", envelope.to_dict()])
            return await asyncio.wait_for(
                self._await_ok(conn, envelope.id),
                timeout=self.config.publish_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return PublishOutcome(relay=url, accepted=False, error="timed out waiting for OK")
        except (RelayClosed, aiohttp.ClientError) as e:
            return PublishOutcome(relay=url, accepted=False, error=str(e))
        finally:
            await self._close_quietly(conn, None)

    async def _await_ok(self, conn: RelayConnection, event_id: str) -> PublishOutcome:
        while True:
            message = await conn.receive()
            if message is None:
                continue
            if message[0] == "OK" and len(message) >= 3 and message[1] == event_id:
                text = str(message[3]) if len(message) > 3 else ""
                accepted = bool(message[2])
                if not accepted:
                    logger.warning(f"{conn.url} rejected {event_id[:12]}: {text}")
                return PublishOutcome(relay=conn.url, accepted=accepted, message=text)
            if message[0] == "NOTICE":
                logger.info(f"Notice from {conn.url}: {message[1:]}")

    # ==================== Query ====================

    async def query(self, relays: list[str], filters: list[Filter]) -> list[Envelope]:
        """Fetch stored envelopes matching the filters.

        Returns:
            Envelopes from every relay that answered, possibly with
            duplicates across relays.

        Raises:
            RelayError: If no relay answered.
        """
        if not relays:
            raise RelayError("No relays configured")

        results = await asyncio.gather(*(self._query_one(url, filters) for url in relays))
        answered = [batch for batch in results if batch is not None]
        if not answered:
            raise RelayError(f"None of {len(relays)} relays answered the query")

        envelopes = [envelope for batch in answered for envelope in batch]
        logger.debug(
            f"Query returned {len(envelopes)} envelopes from {len(answered)}/{len(relays)} relays"
        )
        return envelopes

    async def _query_one(self, url: str, filters: list[Filter]) -> list[Envelope] | None:
        subscription_id = new_subscription_id()
        try:
            conn = await self._connect(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Cannot connect to {url}: {e}")
            return None

        envelopes: list[Envelope] = []
        try:
            await conn.send(["REQ", subscription_id, *filters])
            await asyncio.wait_for(
                self._collect(conn, subscription_id, envelopes),
                timeout=self.config.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Query on {url} timed out after {len(envelopes)} events")
        except (RelayClosed, aiohttp.ClientError) as e:
            logger.warning(f"Query on {url} failed: {e}")
            return None
        finally:
            await self._close_quietly(conn, subscription_id)

        return envelopes

    async def _collect(
        self, conn: RelayConnection, subscription_id: str, envelopes: list[Envelope]
    ) -> None:
        while True:
            message = await conn.receive()
            if message is None or len(message) < 2 or message[1] != subscription_id:
                continue
            if message[0] == "EVENT" and len(message) > 2:
                try:
                    envelopes.append(Envelope.from_dict(message[2]))
                except ParseFailure as e:
                    logger.warning(f"Dropping malformed event from {conn.url}: {e}")
            elif message[0] == "EOSE":
                return
            elif message[0] == "CLOSED":
                logger.warning(f"{conn.url} closed query: {message[2:]}")
                return

    # ==================== Subscriptions ====================

    def subscribe(
        self,
        relays: list[str],
        filters: list[Filter],
        on_envelope: EnvelopeCallback,
        on_end_of_stream: EndOfStreamCallback | None = None,
        subscription_id: str | None = None,
    ) -> Subscription:
        """Open a long-lived subscription. Must be called from a running loop.

        Reusing an existing subscription id replaces that subscription.
        """
        subscription_id = subscription_id or new_subscription_id()
        existing = self.subscriptions.get(subscription_id)
        if existing is not None:
            existing.cancel()

        subscription = Subscription(subscription_id, relays, filters, self)
        subscription.start(on_envelope, on_end_of_stream)
        self.subscriptions[subscription_id] = subscription
        return subscription

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        return self.subscriptions.get(subscription_id)

    def unsubscribe(self, subscription_id: str) -> bool:
        """Cancel a subscription by id. Returns False if unknown."""
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.cancel()
        return True

    # ==================== Reachability ====================

    async def fetch_relay_info(self, url: str) -> dict[str, Any] | None:
        """Fetch a relay's NIP-11 information document."""
        try:
            async with httpx.AsyncClient(timeout=self.config.probe_timeout_seconds) as client:
                response = await client.get(
                    _http_url(url), headers={"Accept": "application/nostr+json"}
                )
        except httpx.HTTPError as e:
            logger.debug(f"Relay info request to {url} failed: {e}")
            return None

        if response.status_code != 200:
            return None
        try:
            info = response.json()
        except ValueError:
            return None
        return info if isinstance(info, dict) else None

    async def is_reachable(self, relays: list[str]) -> bool:
        """True if at least one relay answers over HTTP at all."""
        if not relays:
            return False

        async def probe(client: httpx.AsyncClient, url: str) -> bool:
            try:
                await client.get(_http_url(url), headers={"Accept": "application/nostr+json"})
                return True
            except httpx.HTTPError as e:
                logger.debug(f"Probe of {url} failed: {e}")
                return False

        async with httpx.AsyncClient(timeout=self.config.probe_timeout_seconds) as client:
            results = await asyncio.gather(*(probe(client, url) for url in relays))
        return any(results)

    async def close(self) -> None:
        """Cancel every subscription and close the websocket session."""
        for subscription in list(self.subscriptions.values()):
            subscription.cancel()
            await subscription.wait_closed()
        if self._session is not None:
            await self._session.close()
            self._session = None
