"""
Peer media sessions between two matched participants.

The transport is point-to-point, so every new partner gets a fresh
``PeerMediaSession``; the local camera/microphone stream is acquired once when
a participant enters the room and only released when they leave.

Signaling payloads (offer / answer / candidates) are relayed through a
``SignalingChannel``. ``LoopbackSignalingChannel`` relays them in-process; a
deployment plugs in a real bidirectional channel with the same interface.
Media failures are warnings: the conversation timer keeps running without
video. Only a denied camera/microphone (``MediaAccessError``) blocks entry.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]
SignalHandler = Callable[[str, Payload], Awaitable[None]]


class MediaAccessError(RuntimeError):
    """Camera or microphone access was denied; the participant must act."""


@dataclass
class LocalMedia:
    participant_id: str
    tracks: Tuple[str, ...] = ("audio", "video")
    stream_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    released: bool = False

    def release(self) -> None:
        self.released = True


class MediaDevices(Protocol):
    def acquire(self, participant_id: str) -> LocalMedia:
        ...


class VirtualMediaDevices:
    """Device layer for headless rooms; ``denied`` simulates permission refusal."""

    def __init__(self, denied: Optional[Set[str]] = None):
        self.denied = set(denied or ())

    def acquire(self, participant_id: str) -> LocalMedia:
        if participant_id in self.denied:
            raise MediaAccessError(f"Camera/microphone access denied for {participant_id}")
        return LocalMedia(participant_id=participant_id)


class SignalingChannel(Protocol):
    async def send(self, sender_id: str, recipient_id: str, payload: Payload) -> None:
        ...

    def subscribe(self, participant_id: str, handler: SignalHandler) -> None:
        ...

    def unsubscribe(self, participant_id: str) -> None:
        ...


class LoopbackSignalingChannel:
    """In-process relay: delivers each payload straight to the recipient's handler."""

    def __init__(self) -> None:
        self._handlers: Dict[str, SignalHandler] = {}
        self.delivered: List[Tuple[str, str, str]] = []

    def subscribe(self, participant_id: str, handler: SignalHandler) -> None:
        self._handlers[participant_id] = handler

    def unsubscribe(self, participant_id: str) -> None:
        self._handlers.pop(participant_id, None)

    async def send(self, sender_id: str, recipient_id: str, payload: Payload) -> None:
        handler = self._handlers.get(recipient_id)
        if handler is None:
            raise ConnectionError(f"No signaling subscriber for {recipient_id}")
        self.delivered.append((sender_id, recipient_id, str(payload.get("type"))))
        await handler(sender_id, payload)


class PeerMediaSession:
    """Handle for one point-to-point media link."""

    def __init__(
        self,
        endpoint: "MediaEndpoint",
        remote_participant_id: str,
        is_initiator: bool,
        link_id: str,
    ):
        self.endpoint = endpoint
        self.remote_participant_id = remote_participant_id
        self.is_initiator = is_initiator
        self.link_id = link_id
        self.connected = False
        self.destroyed = False
        self.remote_stream: Optional[str] = None
        self.errors: List[Exception] = []
        self.on_connected: List[Callable[["PeerMediaSession"], None]] = []
        self.on_stream: List[Callable[["PeerMediaSession", str], None]] = []
        self.on_error: List[Callable[["PeerMediaSession", Exception], None]] = []

    @property
    def local_id(self) -> str:
        return self.endpoint.participant_id

    async def start(self) -> None:
        if self.is_initiator:
            await self._signal({"type": "offer", "stream_id": self.endpoint.local_stream_id})

    async def _signal(self, payload: Payload) -> None:
        if self.destroyed:
            return
        payload = dict(payload, link_id=self.link_id)
        try:
            await self.endpoint.channel.send(self.local_id, self.remote_participant_id, payload)
        except Exception as e:
            self._fail(e)

    async def handle_signal(self, payload: Payload) -> None:
        if self.destroyed:
            return
        kind = payload.get("type")
        if kind == "offer" and not self.is_initiator:
            self._receive_stream(payload.get("stream_id"))
            await self._signal({"type": "answer", "stream_id": self.endpoint.local_stream_id})
            self._mark_connected()
        elif kind == "answer" and self.is_initiator:
            self._receive_stream(payload.get("stream_id"))
            self._mark_connected()
        elif kind == "error":
            self._fail(ConnectionError(str(payload.get("reason", "remote error"))))
        else:
            logger.debug("Ignoring %s signal on link %s", kind, self.link_id)

    def _receive_stream(self, stream_id: Optional[str]) -> None:
        if not stream_id:
            return
        self.remote_stream = stream_id
        for cb in list(self.on_stream):
            cb(self, stream_id)

    def _mark_connected(self) -> None:
        if self.connected:
            return
        self.connected = True
        for cb in list(self.on_connected):
            cb(self)

    def _fail(self, error: Exception) -> None:
        self.errors.append(error)
        logger.warning(
            "Media link %s between %s and %s failed: %s",
            self.link_id, self.local_id, self.remote_participant_id, error,
        )
        for cb in list(self.on_error):
            cb(self, error)

    def destroy(self) -> bool:
        """Tear the link down. Returns False when it was already destroyed."""
        if self.destroyed:
            return False
        self.destroyed = True
        self.connected = False
        self.endpoint.forget(self)
        return True


class MediaEndpoint:
    """One participant's side of the media layer."""

    def __init__(self, participant_id: str, local_media: LocalMedia, channel: SignalingChannel):
        self.participant_id = participant_id
        self.local_media = local_media
        self.channel = channel
        self._links: Dict[str, PeerMediaSession] = {}
        self._pending: Dict[Tuple[str, str], List[Payload]] = {}
        self.channel.subscribe(participant_id, self._on_signal)

    @property
    def local_stream_id(self) -> str:
        return self.local_media.stream_id

    async def _on_signal(self, sender_id: str, payload: Payload) -> None:
        link = self._links.get(sender_id)
        link_id = str(payload.get("link_id", ""))
        if link is None or link.link_id != link_id:
            # offer can arrive before our side of the link exists
            self._pending.setdefault((sender_id, link_id), []).append(payload)
            return
        await link.handle_signal(payload)

    async def connect(
        self,
        local_stream: Optional[LocalMedia],
        is_initiator: bool,
        remote_participant_id: str,
        link_id: Optional[str] = None,
    ) -> PeerMediaSession:
        if local_stream is not None and local_stream is not self.local_media:
            self.local_media = local_stream
        if self.local_media.released:
            raise MediaAccessError(f"Local media for {self.participant_id} was already released")
        previous = self._links.get(remote_participant_id)
        if previous is not None:
            previous.destroy()
        link = PeerMediaSession(self, remote_participant_id, is_initiator, link_id or uuid.uuid4().hex)
        self._links[remote_participant_id] = link
        return link

    async def open(self, link: PeerMediaSession) -> None:
        """Start signaling and replay anything that arrived before the link existed."""
        await link.start()
        for payload in self._pending.pop((link.remote_participant_id, link.link_id), []):
            await link.handle_signal(payload)

    def forget(self, link: PeerMediaSession) -> None:
        if self._links.get(link.remote_participant_id) is link:
            del self._links[link.remote_participant_id]
        self._pending.pop((link.remote_participant_id, link.link_id), None)

    def release_local_media(self) -> None:
        for link in list(self._links.values()):
            link.destroy()
        self.local_media.release()
        self.channel.unsubscribe(self.participant_id)


class MediaSessionAdapter:
    """Room-level registry of media endpoints."""

    def __init__(self, channel: Optional[SignalingChannel] = None, devices: Optional[MediaDevices] = None):
        self.channel = channel or LoopbackSignalingChannel()
        self.devices = devices or VirtualMediaDevices()
        self._endpoints: Dict[str, MediaEndpoint] = {}

    def endpoint(self, participant_id: str) -> MediaEndpoint:
        return self._endpoints[participant_id]

    def has_endpoint(self, participant_id: str) -> bool:
        return participant_id in self._endpoints

    def acquire(self, participant_id: str) -> MediaEndpoint:
        """Acquire local media on room entry. Raises ``MediaAccessError`` on denial."""
        endpoint = self._endpoints.get(participant_id)
        if endpoint is not None and not endpoint.local_media.released:
            return endpoint
        local = self.devices.acquire(participant_id)
        endpoint = MediaEndpoint(participant_id, local, self.channel)
        self._endpoints[participant_id] = endpoint
        return endpoint

    def release(self, participant_id: str) -> None:
        endpoint = self._endpoints.pop(participant_id, None)
        if endpoint is not None:
            endpoint.release_local_media()
