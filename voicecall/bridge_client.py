"""
Client for the telephony bridge service.

One aiohttp session for the REST call-control endpoints and at most one
WebSocket to ``/events``. The event stream reconnects after a fixed delay
whenever it closes, unless the close was requested via
``disconnect_events()``.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import structlog
import websockets
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .core.models import CallRecord
from .errors import MalformedEventError, TransportError
from .events import EventType, parse_event
from .metrics import record_malformed_frame, record_request_error

logger = structlog.get_logger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006


@dataclass
class EventStreamOptions:
    """Callbacks and reconnect policy for ``connect_events``.

    Callbacks may be plain functions or coroutine functions.
    """
    on_connect: Optional[Callable[[], Any]] = None
    on_disconnect: Optional[Callable[[int, str], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_snapshot: Optional[Callable[[Any], Any]] = None
    on_event: Optional[Callable[[Any], Any]] = None
    auto_reconnect: bool = True
    reconnect_delay: float = 3.0  # seconds, fixed


def events_url_for(base_url: str) -> str:
    """Derive the event stream URL from the REST base URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/events"


def _call_path(call_id: str, suffix: str = "") -> str:
    return f"/calls/{quote(call_id, safe='')}{suffix}"


class BridgeClient:
    """REST and event stream client for the bridge service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        request_timeout: float = 10.0,
        speak_timeout: float = 120.0,
        close_timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = events_url_for(self.base_url)
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.speak_timeout = speak_timeout
        self.close_timeout = close_timeout
        self.http_session: Optional[aiohttp.ClientSession] = None
        self._websocket = None
        self._events_task: Optional[asyncio.Task] = None
        self._events_options: Optional[EventStreamOptions] = None
        self._closing = False

    @classmethod
    def from_config(cls, bridge_config) -> "BridgeClient":
        return cls(
            base_url=bridge_config.api_url,
            api_key=bridge_config.api_key,
            request_timeout=bridge_config.request_timeout_sec,
            speak_timeout=bridge_config.speak_timeout_sec,
        )

    async def __aenter__(self) -> "BridgeClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            )
        return self.http_session

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a request to the bridge and return the decoded JSON body.

        Empty bodies (e.g. 204 No Content) decode to ``{}``.

        Raises:
            TransportError: non-2xx response or network failure
        """
        url = f"{self.base_url}{path}"
        kwargs: Dict[str, Any] = {"headers": self._headers()}
        if body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        try:
            async with self._session().request(method, url, **kwargs) as response:
                text = await response.text()
                if not 200 <= response.status < 300:
                    logger.error(
                        "Bridge request failed",
                        method=method,
                        path=path,
                        status=response.status,
                        reason=text[:500],
                    )
                    record_request_error(method)
                    raise TransportError(method, path, response.status, text, response.reason or "")
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Bridge HTTP request failed", method=method, path=path, error=str(e) or type(e).__name__)
            record_request_error(method)
            raise TransportError(method, path, None, "", str(e) or type(e).__name__) from e

        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            raise TransportError(method, path, status, text, "response body is not JSON")

    async def health(self) -> Dict[str, Any]:
        """GET /health - bridge and ARI connectivity."""
        return await self.request("GET", "/health")

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(TransportError),
        reraise=True,
    )
    async def wait_until_healthy(self) -> Dict[str, Any]:
        """Probe /health until the bridge answers, retrying with backoff."""
        logger.info("Checking bridge health...", url=self.base_url)
        result = await self.health()
        logger.info("Bridge is healthy", status=result.get("status"), ari=result.get("ari"))
        return result

    async def originate(self, endpoint: str, caller_id: str, timeout: Optional[int] = None) -> Dict[str, Any]:
        """POST /calls - returns ``{callId, channel, status}``."""
        body: Dict[str, Any] = {"endpoint": endpoint, "callerId": caller_id}
        if timeout is not None:
            body["timeout"] = timeout
        logger.info("Originating call", endpoint=endpoint, caller_id=caller_id)
        return await self.request("POST", "/calls", body)

    async def get_call(self, call_id: str) -> CallRecord:
        return CallRecord.from_payload(await self.request("GET", _call_path(call_id)))

    async def list_calls(self) -> List[CallRecord]:
        result = await self.request("GET", "/calls")
        return [CallRecord.from_payload(c) for c in result.get("calls") or [] if isinstance(c, dict)]

    async def play_media(self, call_id: str, media: str) -> Dict[str, Any]:
        logger.info("Playing media on call", call_id=call_id, media=media)
        return await self.request("POST", _call_path(call_id, "/play"), {"media": media})

    async def start_recording(
        self,
        call_id: str,
        format: Optional[str] = None,
        max_duration: Optional[int] = None,
        beep: Optional[bool] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if format is not None:
            body["format"] = format
        if max_duration is not None:
            body["maxDuration"] = max_duration
        if beep is not None:
            body["beep"] = beep
        logger.info("Starting call recording", call_id=call_id, format=format)
        return await self.request("POST", _call_path(call_id, "/record"), body)

    async def start_audio_capture(self, call_id: str) -> Dict[str, Any]:
        """Start streaming caller audio to transcription."""
        return await self.request("POST", _call_path(call_id, "/audio/start"), {})

    async def stop_audio_capture(self, call_id: str) -> Dict[str, Any]:
        return await self.request("POST", _call_path(call_id, "/audio/stop"), {})

    async def hangup(self, call_id: str) -> Dict[str, Any]:
        logger.info("Hanging up call", call_id=call_id)
        return await self.request("DELETE", _call_path(call_id))

    async def send_dtmf(self, call_id: str, digits: str) -> Dict[str, Any]:
        return await self.request("POST", _call_path(call_id, "/dtmf"), {"dtmf": digits})

    async def speak(
        self,
        call_id: str,
        text: str,
        voice: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Server-side TTS; returns once playback has completed.

        The response reports ``voice``, ``language`` and ``durationSeconds``.
        """
        body: Dict[str, Any] = {"text": text}
        if voice:
            body["voice"] = voice
        if language:
            body["language"] = language
        logger.info("Speaking into call", call_id=call_id, chars=len(text), voice=voice)
        return await self.request("POST", _call_path(call_id, "/speak"), body, timeout=self.speak_timeout)

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    def is_events_connected(self) -> bool:
        """True only while the current socket is literally open."""
        websocket = self._websocket
        return websocket is not None and websocket.state is State.OPEN

    async def connect_events(self, options: Optional[EventStreamOptions] = None) -> None:
        """Open the event stream in a background task.

        An existing stream is torn down first so only one socket is ever live.
        """
        if self._events_task is not None and not self._events_task.done():
            logger.warning("Event stream already active; replacing existing connection", url=self.ws_url)
            await self.disconnect_events()

        options = options or EventStreamOptions()
        self._closing = False
        self._events_options = options
        self._events_task = asyncio.create_task(self._run_event_stream(options), name="voicecall-event-stream")

    async def disconnect_events(self) -> None:
        """Close the stream without reconnecting. Safe to call repeatedly."""
        self._closing = True
        task = self._events_task
        websocket = self._websocket

        if websocket is not None:
            try:
                await websocket.close(code=NORMAL_CLOSURE, reason="client disconnect")
            except (WebSocketException, OSError):
                logger.debug("Error closing event stream socket", exc_info=True)

        try:
            if task is not None:
                if websocket is None and not task.done():
                    # Connecting or waiting to reconnect
                    task.cancel()
                try:
                    await asyncio.wait_for(task, timeout=self.close_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Event stream task did not stop in time", timeout_sec=self.close_timeout)
                except asyncio.CancelledError:
                    # Only the reader task's own cancellation is expected here
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
        finally:
            self._events_task = None
            self._websocket = None
        if task is not None or websocket is not None:
            logger.info("Disconnected from bridge event stream")

    async def close(self) -> None:
        """Stop the event stream and release the HTTP session."""
        await self.disconnect_events()
        if self.http_session is not None and not self.http_session.closed:
            await self.http_session.close()
        self.http_session = None

    async def _run_event_stream(self, options: EventStreamOptions) -> None:
        while True:
            websocket = None
            code, reason = ABNORMAL_CLOSURE, ""
            try:
                async with websockets.connect(self.ws_url) as websocket:
                    self._websocket = websocket
                    logger.info("Connected to bridge event stream", url=self.ws_url)
                    await self._invoke(options.on_connect)
                    async for message in websocket:
                        await self._handle_frame(message, options)
                code = websocket.close_code or NORMAL_CLOSURE
                reason = websocket.close_reason or ""
            except ConnectionClosed:
                code = getattr(websocket, "close_code", None) or ABNORMAL_CLOSURE
                reason = getattr(websocket, "close_reason", None) or ""
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                reason = str(e) or type(e).__name__
                logger.warning("Event stream connection failed", url=self.ws_url, error=reason)
                await self._invoke(options.on_error, e)
            finally:
                self._websocket = None

            logger.warning("Bridge event stream closed", code=code, reason=reason)
            await self._invoke(options.on_disconnect, code, reason)

            if self._closing or not options.auto_reconnect:
                return
            logger.info("Reconnecting to bridge event stream", delay_sec=options.reconnect_delay)
            await asyncio.sleep(options.reconnect_delay)
            if self._closing:
                return

    async def _handle_frame(self, message, options: EventStreamOptions) -> None:
        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            event = parse_event(json.loads(message))
        except (ValueError, TypeError, MalformedEventError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors; TypeError covers bad field shapes
            logger.warning("Dropping malformed event frame", error=str(e), frame=str(message)[:200])
            record_malformed_frame()
            return

        if event.event_type is EventType.SNAPSHOT:
            await self._invoke(options.on_snapshot, event)
        else:
            await self._invoke(options.on_event, event)

    async def _invoke(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error(
                "Event stream callback failed",
                callback=getattr(callback, "__name__", repr(callback)),
                exc_info=True,
            )
