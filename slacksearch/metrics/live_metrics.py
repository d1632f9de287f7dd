"""Prometheus metrics for search, live polling and reaction loading."""

from prometheus_client import Counter, Histogram

# Slack Web API calls
slack_api_calls_total = Counter(
    "slacksearch_slack_api_calls_total",
    "Total Slack Web API calls by method",
    ["method", "result"],  # result: success, auth_error, rate_limited, error
)

# Live polling
live_polls_total = Counter(
    "slacksearch_live_polls_total",
    "Total live poll ticks by outcome",
    ["outcome"],  # success, skipped, discarded, auth_error, transient_error, malformed
)

live_poll_duration_seconds = Histogram(
    "slacksearch_live_poll_duration_seconds",
    "Duration of live poll fetch + reconcile in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Reconciliation
reconcile_changes_total = Counter(
    "slacksearch_reconcile_changes_total",
    "Messages classified by reconciliation",
    ["mode", "change"],  # mode: full, incremental; change: added, removed, updated
)

# Reactions
reaction_fetch_total = Counter(
    "slacksearch_reaction_fetch_total",
    "Reaction lookups by result",
    ["result"],  # fetched, error
)

reaction_chunk_failures_total = Counter(
    "slacksearch_reaction_chunk_failures_total",
    "Reaction chunks that failed entirely",
)


def record_reconcile_changes(mode: str, added: int, removed: int, updated: int) -> None:
    for change, count in (("added", added), ("removed", removed), ("updated", updated)):
        if count:
            reconcile_changes_total.labels(mode=mode, change=change).inc(count)
