from __future__ import annotations

from prometheus_client import Counter, Gauge

# Movie/episode manager metrics
arr_reachable = Gauge(
    "mediarequests_arr_reachable",
    "Whether a Sonarr/Radarr instance is reachable (1) or not (0)",
    ["name", "type"],
)

provider_calls_total = Counter(
    "mediarequests_provider_calls_total",
    "Calls made to the movie/episode managers",
    ["provider", "outcome"],  # ok / not_found / timeout / error
)

# Lifecycle metrics
approval_actions_total = Counter(
    "mediarequests_approval_actions_total",
    "Approval workflow actions by outcome",
    ["action", "outcome"],
)

sync_results_total = Counter(
    "mediarequests_sync_results_total",
    "Per-request results of reconciliation passes",
    ["result"],  # available / partially_available / downloading / removed / unchanged / error
)

notification_deliveries_total = Counter(
    "mediarequests_notification_deliveries_total",
    "Notification deliveries by channel and final status",
    ["channel", "status"],
)


def update_arr_metrics(name: str, type_: str, reachable: bool) -> None:
    arr_reachable.labels(name=name, type=type_).set(1.0 if reachable else 0.0)


def inc_provider_call(provider: str, outcome: str) -> None:
    provider_calls_total.labels(provider=provider, outcome=outcome).inc()


def inc_approval(action: str, outcome: str) -> None:
    approval_actions_total.labels(action=action, outcome=outcome).inc()


def inc_sync_result(result: str) -> None:
    sync_results_total.labels(result=result).inc()


def inc_delivery(channel: str, status: str) -> None:
    notification_deliveries_total.labels(channel=channel, status=status).inc()
