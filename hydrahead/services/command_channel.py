"""
Command Channel - deliver one lifecycle command (Init/Close/Fanout) to one party's Hydra node

One WebSocket per command:

    connecting -> awaiting_greeting -> command_sent -> awaiting_response -> completed
                                                     +-> timed_out / failed

The command is only written after the node's Greetings message. A socket error
before that falls back once to ``POST /<action>`` on the same port. A timeout
after the command went out is reported as accepted: the node processes
commands asynchronously and the head status endpoint is the source of truth.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Union

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from hydrahead.config import settings
from hydrahead.errors import ChannelTransportError, ChannelTimeout, UpstreamError, UpstreamUnavailable
from hydrahead.models import ChannelState, CommandOutcome, CommandResult, HeadAction

logger = logging.getLogger(__name__)

GREETINGS_TAG = "Greetings"
ASYNC_NOTE = "Hydra processes commands asynchronously. Check status endpoint for current state."


class ChannelSession:
    """Per-invocation protocol state, never shared between commands"""

    def __init__(self):
        self.state = ChannelState.CONNECTING
        self.command_sent = False
        self.sent_payload: Optional[str] = None
        self.transitions: List[ChannelState] = [ChannelState.CONNECTING]

    def move(self, state: ChannelState) -> None:
        self.state = state
        self.transitions.append(state)


class CommandChannel:

    def __init__(
        self,
        port: int,
        party: Optional[str] = None,
        host: Optional[str] = None,
        timeout: Optional[float] = None,
        http_timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.port = port
        self.party = party or f"port {port}"
        self.host = host or settings.HYDRA_HOST
        self.timeout = timeout if timeout is not None else settings.HYDRA_COMMAND_TIMEOUT
        self.http_timeout = http_timeout if http_timeout is not None else settings.HYDRA_HTTP_TIMEOUT
        self.http_transport = http_transport
        self.last_session: Optional[ChannelSession] = None

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}/"

    def http_url(self, action: HeadAction) -> str:
        return f"http://{self.host}:{self.port}/{action.value}"

    @staticmethod
    def build_message(action: HeadAction, other_parties: Optional[List[str]] = None) -> Dict[str, Any]:
        message: Dict[str, Any] = {"tag": action.tag}
        if action is HeadAction.INIT and other_parties:
            message["otherParties"] = [{"vkey": vkey} for vkey in other_parties]
        return message

    async def send(
        self,
        action: Union[HeadAction, str],
        other_parties: Optional[List[str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> CommandResult:
        """
        Drive one command to completion.

        Args:
            action: init / close / fanout
            other_parties: hydra vkey hex of the other head members (Init only)
            body: JSON body forwarded to the HTTP fallback endpoint

        Returns:
            CommandResult, never raises for protocol or transport failures
        """
        if not isinstance(action, HeadAction):
            action = HeadAction.parse(action)
        message = self.build_message(action, other_parties)
        session = ChannelSession()
        self.last_session = session

        logger.info(f"[{action.value}] Sending {action.tag} to {self.party} on {self.ws_url}")
        if "otherParties" in message:
            logger.info(f"[{action.value}] Including {len(message['otherParties'])} other party vkeys")

        try:
            return await asyncio.wait_for(
                self._run_session(session, action, message), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            session.move(ChannelState.TIMED_OUT)
            return self._timed_out(session, action)
        except ChannelTransportError as e:
            session.move(ChannelState.FAILED)
            logger.error(f"[{action.value}] WebSocket error for {self.party}: {e}")
            return await self._http_fallback(action, body)

    async def _run_session(
        self, session: ChannelSession, action: HeadAction, message: Dict[str, Any]
    ) -> CommandResult:
        try:
            async with connect(self.ws_url, open_timeout=None, close_timeout=1) as ws:
                session.move(ChannelState.AWAITING_GREETING)
                logger.debug(f"[{action.value}] Connection open, waiting for Greetings")

                async for raw in ws:
                    response = self._decode(raw, action)
                    if response is None:
                        continue
                    tag = response.get("tag")

                    if not session.command_sent:
                        if tag == GREETINGS_TAG:
                            payload = json.dumps(message)
                            await ws.send(payload)
                            session.command_sent = True
                            session.sent_payload = payload
                            session.move(ChannelState.COMMAND_SENT)
                            session.move(ChannelState.AWAITING_RESPONSE)
                            logger.info(f"[{action.value}] Greetings received, sent {payload}")
                        continue

                    if tag == GREETINGS_TAG:
                        continue

                    session.move(ChannelState.COMPLETED)
                    logger.info(f"[{action.value}] Received response from {self.party}: {tag}")
                    return CommandResult(
                        party=self.party,
                        action=action,
                        outcome=CommandOutcome.COMPLETED,
                        state=session.state,
                        message=f"Action {action.value} completed successfully",
                        response=response,
                    )
        except ConnectionClosedOK:
            pass
        except (OSError, WebSocketException) as e:
            if not session.command_sent:
                raise ChannelTransportError(f"{type(e).__name__}: {e}") from e
            logger.warning(f"[{action.value}] Connection error after command was sent: {e}")

        # Closed without a response; the command may still be processing.
        # Only the timeout decides the result.
        logger.info(f"[{action.value}] WebSocket closed without response for {self.party}")
        await asyncio.Event().wait()

    @staticmethod
    def _decode(raw: Union[str, bytes], action: HeadAction) -> Optional[Dict[str, Any]]:
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"[{action.value}] Failed to parse WebSocket message: {e}")
            return None
        if not isinstance(decoded, dict):
            logger.warning(f"[{action.value}] Ignoring untagged message: {decoded!r}")
            return None
        return decoded

    def _timed_out(self, session: ChannelSession, action: HeadAction) -> CommandResult:
        if session.command_sent:
            logger.warning(
                f"[{action.value}] Timeout for {self.party} - command was sent but no response "
                f"received. This is normal, commands are processed asynchronously."
            )
            return CommandResult(
                party=self.party,
                action=action,
                outcome=CommandOutcome.ACCEPTED_ASYNC,
                state=session.state,
                message=f"Action {action.value} sent successfully (processing asynchronously)",
                note=ASYNC_NOTE,
            )

        logger.error(f"[{action.value}] Timeout for {self.party} - never received Greetings")
        return CommandResult(
            party=self.party,
            action=action,
            outcome=CommandOutcome.FAILED,
            state=session.state,
            message="Failed to establish WebSocket communication with Hydra node",
            error_kind=ChannelTimeout.kind,
        )

    async def _http_fallback(self, action: HeadAction, body: Optional[Dict[str, Any]]) -> CommandResult:
        url = self.http_url(action)
        logger.info(f"[{action.value}] Attempting HTTP fallback for {self.party} to {url}")
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout, transport=self.http_transport) as client:
                r = await client.post(
                    url,
                    json=body or None,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(f"[{action.value}] HTTP request failed for {self.party}: {e}")
            return CommandResult(
                party=self.party,
                action=action,
                outcome=CommandOutcome.FAILED,
                state=ChannelState.FAILED,
                message=(
                    f"Unable to reach {self.party}'s Hydra node on port {self.port}: {e}. "
                    f"Please check if the node is running."
                ),
                error_kind=UpstreamUnavailable.kind,
            )

        if "application/json" in r.headers.get("content-type", ""):
            try:
                data: Any = r.json()
            except ValueError:
                data = r.text
        else:
            data = r.text

        logger.info(f"[{action.value}] HTTP response status for {self.party}: {r.status_code}")
        if not r.is_success:
            logger.error(f"[{action.value}] HTTP error for {self.party}: {data}")
            return CommandResult(
                party=self.party,
                action=action,
                outcome=CommandOutcome.FAILED,
                state=ChannelState.FAILED,
                message=data if isinstance(data, str) and data else "Action failed",
                response=data,
                error_kind=UpstreamError.kind,
                http_status=r.status_code,
            )

        return CommandResult(
            party=self.party,
            action=action,
            outcome=CommandOutcome.FALLBACK,
            state=ChannelState.FAILED,
            message=f"Action {action.value} sent via HTTP",
            response=data,
            http_status=r.status_code,
        )
