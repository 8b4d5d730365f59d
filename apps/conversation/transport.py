"""Session & transport binding.

Outbound: utterances are POSTed to the backend, one request per flush.
Inbound:  the backend answers on a realtime channel; only messages for the
          bound session are forwarded to the orchestrator.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from apps.conversation.errors import TransportFailure
from apps.conversation.pusher import Channel, PusherClient, RealtimeClient

log = logging.getLogger("stella.transport")

RealtimeFactory = Callable[[str], RealtimeClient]
ResponseCallback = Callable[[str], Awaitable[None]]


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class UtterancePayload(BaseModel):
    text: str
    userId: str


class OutboundSpeechMessage(BaseModel):
    session_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    data: UtterancePayload


class OrderItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    productName: str
    quantity: float


class SpeechOutput(BaseModel):
    model_config = ConfigDict(extra="allow")

    response: str = ""
    intention: Optional[str] = None
    items: Optional[list[OrderItem]] = None
    stella_analysis: Optional[str] = None
    reason: Optional[str] = None


class InboundSpeechMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: Optional[str] = None
    data: SpeechOutput = Field(default_factory=SpeechOutput)


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------

class SessionTransport:
    """Owns the realtime subscription and the outbound HTTP client for one session at a time."""

    def __init__(
        self,
        config,
        realtime_factory: RealtimeFactory,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._realtime_factory = realtime_factory
        self._http_transport = http_transport
        self._http: Optional[httpx.AsyncClient] = None

        self._on_response: Optional[ResponseCallback] = None
        self._on_connection_lost: Optional[Callable[[], None]] = None
        self._session_id: Optional[str] = None
        self._client: Optional[RealtimeClient] = None
        self._channel: Optional[Channel] = None
        self._epoch = 0

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def subscribed(self) -> bool:
        return self._channel is not None

    def set_response_handler(self, callback: ResponseCallback) -> None:
        self._on_response = callback

    def set_connection_lost_handler(self, callback: Callable[[], None]) -> None:
        self._on_connection_lost = callback

    # -- realtime -------------------------------------------------------------

    async def open(self, session_id: str) -> None:
        """Bind *session_id* and subscribe to the realtime channel.

        The session stays bound even if the subscription fails, so utterances
        can still be sent.  Raises TransportFailure.
        """
        if self._session_id == session_id and self._channel is not None:
            return
        if self._session_id is not None and self._session_id != session_id:
            await self.close()
        if self._client is not None:
            # left behind by a lost connection
            stale, self._client = self._client, None
            await _quiet_disconnect(stale)

        self._epoch += 1
        epoch = self._epoch
        self._session_id = session_id

        client = self._realtime_factory(session_id)
        try:
            await client.connect()
            channel = await client.subscribe(self._config.channel)
        except BaseException:
            await _quiet_disconnect(client)
            raise

        if epoch != self._epoch:
            # closed (or reopened) while we were connecting
            log.info("event=realtime_open_abandoned session=%s", session_id)
            await _quiet_disconnect(client)
            return

        channel.bind(self._config.event, self._handle_inbound)
        client.on_connection_lost = lambda: self._connection_lost(epoch)
        self._client = client
        self._channel = channel
        log.info("event=transport_open session=%s channel=%s", session_id, self._config.channel)

    async def close(self) -> None:
        """Unbind, unsubscribe, disconnect.  Safe when never opened."""
        self._epoch += 1
        session_id = self._session_id
        self._session_id = None
        channel, client = self._channel, self._client
        self._channel = None
        self._client = None

        if channel is not None:
            channel.unbind_all()
        if client is not None:
            try:
                await client.unsubscribe(self._config.channel)
            except TransportFailure as exc:
                log.debug("event=realtime_unsubscribe_failed error=%s", exc)
            await _quiet_disconnect(client)
        if session_id is not None:
            log.info("event=transport_closed session=%s", session_id)

    def _connection_lost(self, epoch: int) -> None:
        if epoch != self._epoch or self._channel is None:
            return
        log.warning("event=realtime_connection_lost session=%s", self._session_id)
        # the session stays bound: utterances can still be POSTed
        self._channel.unbind_all()
        self._channel = None
        if self._on_connection_lost is not None:
            self._on_connection_lost()

    async def _handle_inbound(self, data: Any) -> None:
        try:
            message = InboundSpeechMessage.model_validate(data)
        except ValidationError as exc:
            log.warning("event=inbound_invalid error=%s", exc.errors()[:1])
            return

        if self._session_id is None or message.session_id != self._session_id:
            log.debug(
                "event=inbound_dropped reason=session_mismatch got=%s current=%s",
                message.session_id, self._session_id,
            )
            return

        response = message.data.response
        if not response:
            log.debug("event=inbound_dropped reason=empty_response correlation=%s", message.correlation_id)
            return

        log.info(
            "event=inbound_response correlation=%s intention=%s chars=%d",
            message.correlation_id, message.data.intention, len(response),
        )
        if self._on_response is not None:
            await self._on_response(response)

    # -- outbound ---------------------------------------------------------------

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._config.backend_url,
                timeout=httpx.Timeout(self._config.request_timeout_sec),
                transport=self._http_transport,
            )
        return self._http

    def build_message(self, text: str) -> OutboundSpeechMessage:
        if self._session_id is None:
            raise TransportFailure("no active session")
        return OutboundSpeechMessage(
            session_id=self._session_id,
            data=UtterancePayload(text=text, userId=self._config.user_id),
        )

    async def send(self, text: str) -> OutboundSpeechMessage:
        """POST one utterance.  Raises TransportFailure; never retries."""
        message = self.build_message(text)
        log.info("event=utterance_send session=%s correlation=%s chars=%d",
                 message.session_id, message.correlation_id, len(text))
        try:
            response = await self._get_http().post(
                self._config.process_path,
                json=message.model_dump(),
            )
        except httpx.HTTPError as exc:
            raise TransportFailure(f"utterance submission failed: {exc}") from exc
        if not response.is_success:
            raise TransportFailure(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return message

    async def aclose(self) -> None:
        await self.close()
        if self._http is not None:
            await self._http.aclose()
            self._http = None


async def _quiet_disconnect(client: RealtimeClient) -> None:
    try:
        await client.disconnect()
    except Exception as exc:
        log.debug("event=realtime_disconnect_error error=%s", exc)


def pusher_factory(app_key: Optional[str], config) -> RealtimeFactory:
    """Build a RealtimeFactory that opens one Pusher connection per session."""

    def _create(session_id: str) -> RealtimeClient:
        return PusherClient(
            app_key or "",
            cluster=config.pusher_cluster,
            auth_endpoint=config.pusher_auth_endpoint,
            auth_params={"session_id": session_id},
            timeout=config.subscribe_timeout_sec,
        )

    return _create
