"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"instachat_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"instachat_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"instachat_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"instachat_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

CHAT_MESSAGES_APPENDED = Counter(
	"instachat_chat_messages_appended_total",
	"Messages appended to conversation logs",
	["conversation_kind", "content_kind"],
)

CHAT_MESSAGES_REMOVED = Counter(
	"instachat_chat_messages_removed_total",
	"Messages removed by their author",
)

CHAT_SEND_FAILURES = Counter(
	"instachat_chat_send_failures_total",
	"Send attempts that ended in an error",
	["reason"],
)

CHAT_NOTIFICATIONS = Counter(
	"instachat_chat_notifications_total",
	"Push notifications handed to the push collaborator",
	["result"],
)

CHAT_UPLOADS = Counter(
	"instachat_chat_uploads_total",
	"Media upload jobs by terminal outcome",
	["kind", "result"],
)

CHAT_UPLOAD_BYTES = Counter(
	"instachat_chat_upload_bytes_total",
	"Bytes written to object storage",
	["kind"],
)

LIVE_SUBSCRIPTIONS = Gauge(
	"instachat_live_subscriptions",
	"Open live subscriptions per topic family",
	["family"],
)

CHAT_SESSIONS = Gauge(
	"instachat_chat_sessions_open",
	"Open chat session controllers",
)

PRESENCE_UPDATES = Counter(
	"instachat_presence_updates_total",
	"Presence flag writes",
	["active"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_message_appended(conversation_kind: str, content_kind: str) -> None:
	CHAT_MESSAGES_APPENDED.labels(conversation_kind=conversation_kind, content_kind=content_kind).inc()


def inc_message_removed() -> None:
	CHAT_MESSAGES_REMOVED.inc()


def inc_send_failure(reason: str) -> None:
	CHAT_SEND_FAILURES.labels(reason=reason).inc()


def inc_notification(result: str) -> None:
	CHAT_NOTIFICATIONS.labels(result=result).inc()


def inc_upload(kind: str, result: str) -> None:
	CHAT_UPLOADS.labels(kind=kind, result=result).inc()


def add_upload_bytes(kind: str, count: int) -> None:
	CHAT_UPLOAD_BYTES.labels(kind=kind).inc(count)


def live_subscription_opened(family: str) -> None:
	LIVE_SUBSCRIPTIONS.labels(family=family).inc()


def live_subscription_closed(family: str) -> None:
	LIVE_SUBSCRIPTIONS.labels(family=family).dec()


def session_opened() -> None:
	CHAT_SESSIONS.inc()


def session_closed() -> None:
	CHAT_SESSIONS.dec()


def inc_presence_update(active: bool) -> None:
	PRESENCE_UPDATES.labels(active="true" if active else "false").inc()
