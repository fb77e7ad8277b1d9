"""Prometheus metrics for the voicecall bridge client."""

from prometheus_client import Counter, Gauge, Histogram

_EVENTS_TOTAL = Counter(
    "voicecall_events_total",
    "Bridge events dispatched, by event type",
    labelnames=("type",),
)
_MALFORMED_FRAMES_TOTAL = Counter(
    "voicecall_malformed_frames_total",
    "Event stream frames dropped because they could not be parsed",
)
_STREAM_CONNECTED = Gauge(
    "voicecall_event_stream_connected",
    "Whether the bridge event stream is connected (1 = connected)",
)
_STREAM_DISCONNECTS_TOTAL = Counter(
    "voicecall_event_stream_disconnects_total",
    "Number of times the bridge event stream closed or failed to connect",
)
_ACTIVE_CALLS = Gauge(
    "voicecall_active_calls",
    "Calls currently tracked in the registry",
)
_REQUEST_ERRORS_TOTAL = Counter(
    "voicecall_request_errors_total",
    "Failed bridge REST requests, by HTTP method",
    labelnames=("method",),
)
_UTTERANCES_TOTAL = Counter(
    "voicecall_utterances_total",
    "Complete caller utterances handed to the agent",
)
_AGENT_FAILURES_TOTAL = Counter(
    "voicecall_agent_failures_total",
    "Agent transcription callbacks that raised",
)
_AGENT_LATENCY = Histogram(
    "voicecall_agent_response_seconds",
    "Time from a complete utterance to the agent's reply",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)


def record_event(event_type: str) -> None:
    _EVENTS_TOTAL.labels(event_type).inc()


def record_malformed_frame() -> None:
    _MALFORMED_FRAMES_TOTAL.inc()


def set_stream_connected(connected: bool) -> None:
    _STREAM_CONNECTED.set(1 if connected else 0)


def record_stream_disconnect() -> None:
    _STREAM_DISCONNECTS_TOTAL.inc()


def set_active_calls(count: int) -> None:
    _ACTIVE_CALLS.set(count)


def record_request_error(method: str) -> None:
    _REQUEST_ERRORS_TOTAL.labels(method.upper()).inc()


def record_utterance() -> None:
    _UTTERANCES_TOTAL.inc()


def record_agent_failure() -> None:
    _AGENT_FAILURES_TOTAL.inc()


def observe_agent_latency(seconds: float) -> None:
    _AGENT_LATENCY.observe(seconds)
