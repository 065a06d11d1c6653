"""MQTT topic helpers.

We keep topic construction in one place so all components agree on naming.

Topic layout under a configurable namespace (default: `yearbook/v0`):

Request/response:
- `<ns>/coordinator/requests`
    Every station command, query, join/leave and heartbeat.
- `<ns>/coordinator/responses/<client_id>`
    Replies for one client (correlated by `corr_id`).

Events:
- `<ns>/stations/events/<station_id>`
    DomainEvents for one registered station connection. The coordinator
    publishes here from that connection's sender thread.

You can run multiple independent deployments on a shared broker by changing
the `namespace` parameter (e.g. `--namespace school/east`).
"""

from __future__ import annotations

DEFAULT_NAMESPACE = "yearbook/v0"


def coordinator_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/coordinator/requests"


def coordinator_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/coordinator/responses/{client_id}"


def station_events(station_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/stations/events/{station_id}"
