"""
WebSocket broadcast service for Token Aggregator.
Tracks connected clients and their subscriptions, and turns successive
aggregation results into price-update, volume-spike and heartbeat events.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel

from ..api.schemas import PriceUpdateEvent, TokenData, VolumeSpikeEvent, utcnow
from ..core.logging_config import create_logger
from .token_registry import TokenRegistry

logger = create_logger(__name__)

VOLUME_SPIKE_THRESHOLD = 1.5


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class ClientConnection:
    """One connected WebSocket client."""
    websocket: Any
    subscriptions: Set[str] = field(default_factory=set)


class BroadcastService:
    """Pushes token deltas to WebSocket clients."""

    def __init__(self, aggregator: Any, spike_threshold: float = VOLUME_SPIKE_THRESHOLD,
                 clock: Callable[[], datetime] = utcnow, registry: Optional[TokenRegistry] = None):
        self._aggregator = aggregator
        self._registry = registry
        self.spike_threshold = spike_threshold
        self._clock = clock
        self._clients: Dict[str, ClientConnection] = {}
        # Accepted clients still waiting for initial_data; not broadcast to
        self._pending: Dict[str, ClientConnection] = {}
        self._previous: Dict[str, TokenData] = {}

    def _event(self, event_type: str, data: Any, **extra: Any) -> str:
        message = {
            "type": event_type,
            "data": _jsonable(data),
            "timestamp": self._clock().isoformat()
        }
        message.update(extra)
        return json.dumps(message)

    # Connection Management

    async def connect(self, websocket: Any, client_id: Optional[str] = None) -> str:
        """
        Accept a client and send it the current aggregated list.

        The client joins the broadcast set only after ``initial_data`` (or the
        error replacing it) has been sent, so no delta can reach it first.
        """
        await websocket.accept()
        client_id = client_id or uuid.uuid4().hex
        client = ClientConnection(websocket=websocket)
        self._pending[client_id] = client

        message = await self._initial_message(client_id)
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Error sending initial data to client", extra={
                "client_id": client_id,
                "error": str(e)
            })
            self._pending.pop(client_id, None)
            return client_id

        # Dropped while the initial fetch was running
        if self._pending.pop(client_id, None) is None:
            return client_id

        self._clients[client_id] = client
        logger.info("Client connected", extra={
            "client_id": client_id,
            "clients": len(self._clients)
        })
        return client_id

    def disconnect(self, client_id: str) -> None:
        self._pending.pop(client_id, None)
        if self._clients.pop(client_id, None) is not None:
            logger.info("Client disconnected", extra={
                "client_id": client_id,
                "clients": len(self._clients)
            })

    async def _initial_message(self, client_id: str) -> str:
        try:
            tokens = await self._aggregator.aggregate_all_tokens()
        except Exception as e:
            logger.error("Failed to fetch initial data", extra={
                "client_id": client_id,
                "error": str(e)
            })
            return self._event("error", {"message": "Failed to fetch initial data"})
        return self._event("initial_data", tokens)

    def resolve_addresses(self, addresses: Iterable[str]) -> Tuple[List[str], List[str]]:
        """
        Map client-supplied addresses to canonical token addresses.

        Returns ``(known, unknown)``. Matching is case-insensitive, the same as
        the REST lookup. Without a registry every non-blank address is known.
        """
        known: List[str] = []
        unknown: List[str] = []
        for address in addresses:
            address = address.strip() if address else ""
            if not address:
                continue
            if self._registry is None:
                known.append(address)
                continue
            metadata = self._registry.get_token(address)
            if metadata is None:
                unknown.append(address)
            else:
                known.append(metadata.address)
        return known, unknown

    def subscribe(self, client_id: str, addresses: Iterable[str]) -> List[str]:
        """Add addresses to a client's subscriptions. Returns the full subscription list."""
        client = self._clients.get(client_id)
        if client is None:
            return []
        known, _ = self.resolve_addresses(addresses)
        client.subscriptions.update(known)
        logger.debug("Client subscribed", extra={
            "client_id": client_id,
            "subscriptions": len(client.subscriptions)
        })
        return sorted(client.subscriptions)

    def unsubscribe(self, client_id: str, addresses: Iterable[str]) -> List[str]:
        """Remove addresses from a client's subscriptions. Returns the remaining list."""
        client = self._clients.get(client_id)
        if client is None:
            return []
        known, _ = self.resolve_addresses(addresses)
        client.subscriptions.difference_update(known)
        logger.debug("Client unsubscribed", extra={
            "client_id": client_id,
            "subscriptions": len(client.subscriptions)
        })
        return sorted(client.subscriptions)

    def get_subscriptions(self, client_id: str) -> List[str]:
        client = self._clients.get(client_id)
        return sorted(client.subscriptions) if client else []

    def get_connected_clients_count(self) -> int:
        return len(self._clients)

    # Sending

    async def send_to_client(self, client_id: str, message: str) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        try:
            await client.websocket.send_text(message)
            return True
        except Exception as e:
            logger.error("Error sending message to client", extra={
                "client_id": client_id,
                "error": str(e)
            })
            self.disconnect(client_id)
            return False

    async def send_event(self, client_id: str, event_type: str, data: Any) -> bool:
        return await self.send_to_client(client_id, self._event(event_type, data))

    async def _send_many(self, client_ids: List[str], message: str) -> None:
        disconnected = []
        for client_id in client_ids:
            client = self._clients.get(client_id)
            if client is None:
                continue
            try:
                await client.websocket.send_text(message)
            except Exception as e:
                logger.error("Error broadcasting to client", extra={
                    "client_id": client_id,
                    "error": str(e)
                })
                disconnected.append(client_id)

        for client_id in disconnected:
            self.disconnect(client_id)

    async def broadcast(self, message: str) -> None:
        await self._send_many(list(self._clients), message)

    async def _send_to_subscribers(self, address: str, message: str) -> None:
        subscribers = [
            client_id for client_id, client in self._clients.items()
            if address in client.subscriptions
        ]
        if subscribers:
            await self._send_many(subscribers, message)

    # Delta Detection

    def _detect(self, token: TokenData, previous: TokenData
                ) -> Tuple[Optional[PriceUpdateEvent], Optional[VolumeSpikeEvent]]:
        now = self._clock()
        price_event = None
        spike_event = None

        if previous.price_usd != token.price_usd:
            if previous.price_usd:
                change = (token.price_usd - previous.price_usd) / previous.price_usd * 100
            else:
                change = 0.0
            price_event = PriceUpdateEvent(
                address=token.address,
                symbol=token.symbol,
                price_usd=token.price_usd,
                price_change=change,
                volume=token.volume.h24,
                timestamp=now
            )

        if previous.volume.h24 > 0:
            ratio = token.volume.h24 / previous.volume.h24
            if ratio >= self.spike_threshold:
                spike_event = VolumeSpikeEvent(
                    address=token.address,
                    symbol=token.symbol,
                    volume=token.volume.h24,
                    previous_volume=previous.volume.h24,
                    percentage_increase=(ratio - 1) * 100,
                    timestamp=now
                )

        return price_event, spike_event

    async def broadcast_price_updates(self, tokens: List[TokenData]
                                      ) -> Tuple[List[PriceUpdateEvent], List[VolumeSpikeEvent]]:
        """Compare a batch with the last one seen and notify clients.

        Subscribers of an address get per-token ``price_update`` and
        ``volume_spike`` events. Every client then gets the batched
        ``price_updates`` / ``volume_spikes`` (when non-empty) and a
        ``heartbeat``. Last-seen state is updated even with no clients.
        """
        updates: List[PriceUpdateEvent] = []
        spikes: List[VolumeSpikeEvent] = []

        for token in tokens:
            previous = self._previous.get(token.address)
            self._previous[token.address] = token
            if previous is None:
                continue

            price_event, spike_event = self._detect(token, previous)

            if price_event is not None:
                updates.append(price_event)
                await self._send_to_subscribers(token.address, self._event("price_update", price_event))

            if spike_event is not None:
                spikes.append(spike_event)
                await self._send_to_subscribers(token.address, self._event("volume_spike", spike_event))

        if not self._clients:
            logger.debug("No clients connected, skipping broadcast", extra={
                "price_updates": len(updates),
                "volume_spikes": len(spikes)
            })
            return updates, spikes

        if updates:
            await self.broadcast(self._event("price_updates", updates, count=len(updates)))
        if spikes:
            await self.broadcast(self._event("volume_spikes", spikes, count=len(spikes)))

        await self.broadcast(self._event("heartbeat", {
            "token_count": len(tokens),
            "client_count": len(self._clients)
        }))

        logger.info("Broadcast token updates", extra={
            "price_updates": len(updates),
            "volume_spikes": len(spikes),
            "clients": len(self._clients)
        })
        return updates, spikes

    async def close(self) -> None:
        """Close every client connection."""
        connections = {**self._pending, **self._clients}
        for client_id, client in connections.items():
            try:
                await client.websocket.close()
            except Exception as e:
                logger.debug("Error closing client connection", extra={
                    "client_id": client_id,
                    "error": str(e)
                })
        self._clients.clear()
        self._pending.clear()
