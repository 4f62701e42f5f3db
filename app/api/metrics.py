"""
Prometheus metrics for the API service.

Tracks live channels, gated event delivery, and authentication outcomes.
"""
from prometheus_client import Counter, Gauge, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# Live channel metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of authenticated live channels",
    registry=registry
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of live channels authenticated",
    registry=registry
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of live channel closures",
    labelnames=["reason"],
    registry=registry
)

websocket_subscriptions_active = Gauge(
    "websocket_subscriptions_active",
    "Number of open subscriptions across all channels",
    registry=registry
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users with at least one channel",
    registry=registry
)

# Event delivery metrics
events_delivered_total = Counter(
    "events_delivered_total",
    "Events that passed the subscription gate and were sent",
    labelnames=["kind"],
    registry=registry
)

# Business metrics
messages_created_total = Counter(
    "messages_created_total",
    "Total number of messages created",
    registry=registry
)

groups_created_total = Counter(
    "groups_created_total",
    "Total number of groups created",
    registry=registry
)

# Authentication metrics
auth_requests_total = Counter(
    "auth_requests_total",
    "Total number of authentication requests",
    labelnames=["type", "status"],
    registry=registry
)

auth_token_validations_total = Counter(
    "auth_token_validations_total",
    "Total number of token validations at channel open",
    labelnames=["status"],
    registry=registry
)


def update_websocket_metrics(connection_manager) -> None:
    """
    Update live-channel gauges from connection manager state.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.set(connection_manager.get_connection_count())
    websocket_users_connected.set(connection_manager.get_user_count())
    websocket_subscriptions_active.set(connection_manager.get_subscription_count())
