"""Central registry for Prometheus metrics used across the engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


DOCSTORE_OPS = Counter(
	"whereabouts_docstore_ops_total",
	"Document store operations by kind and outcome",
	["op", "result"],
)

DOCSTORE_WATCH_CONFLICTS = Counter(
	"whereabouts_docstore_watch_conflicts_total",
	"Optimistic update retries caused by concurrent writers",
)

SUBSCRIPTIONS_ACTIVE = Gauge(
	"whereabouts_subscriptions_active",
	"Open document store subscriptions",
	["target"],
)

SUBSCRIPTION_ERRORS = Counter(
	"whereabouts_subscription_errors_total",
	"Subscription streams interrupted by store failures",
	["target"],
)

PRESENCE_TOGGLES = Counter(
	"whereabouts_presence_toggles_total",
	"Presence toggles issued by the record owner",
	["state"],
)

PRESENCE_STALE_CORRECTIONS = Counter(
	"whereabouts_presence_stale_corrections_total",
	"Presence flags expired on load after the staleness window",
)

PRESENCE_WRITE_FAILURES = Counter(
	"whereabouts_presence_write_failures_total",
	"Fire-and-forget presence writes that failed",
)

FRIEND_REQUESTS_SENT = Counter(
	"whereabouts_friend_requests_sent_total",
	"Friend requests delivered",
	["result"],
)

FRIEND_REQUEST_REJECTS = Counter(
	"whereabouts_friend_request_rejects_total",
	"Rejected friend graph operations",
	["reason"],
)

FRIENDSHIPS_ACCEPTED = Counter(
	"whereabouts_friendships_accepted_total",
	"Friend requests accepted",
)

FRIENDSHIPS_REMOVED = Counter(
	"whereabouts_friendships_removed_total",
	"Friendships removed",
)

PARTIAL_MUTATIONS = Counter(
	"whereabouts_partial_mutations_total",
	"Two-write friend mutations whose second write failed",
	["operation"],
)

ROSTER_RESUBSCRIBES = Counter(
	"whereabouts_roster_resubscribes_total",
	"Membership subscriptions replaced after a friend set change",
)

ROSTER_TRUNCATIONS = Counter(
	"whereabouts_roster_truncations_total",
	"Friend sets larger than the membership query cap",
)

SUGGESTION_RUNS = Counter(
	"whereabouts_suggestion_runs_total",
	"Suggestion recomputations",
	["result"],
)

SUGGESTION_DURATION = Histogram(
	"whereabouts_suggestion_duration_seconds",
	"Time spent enumerating users and ranking suggestions",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0),
)

SESSIONS_ACTIVE = Gauge(
	"whereabouts_sessions_active",
	"Signed-in session scopes currently owned by engines",
)


def inc_docstore_op(op: str, result: str = "ok") -> None:
	DOCSTORE_OPS.labels(op=op, result=result).inc()


def inc_watch_conflict() -> None:
	DOCSTORE_WATCH_CONFLICTS.inc()


def subscription_opened(target: str) -> None:
	SUBSCRIPTIONS_ACTIVE.labels(target=target).inc()


def subscription_closed(target: str) -> None:
	SUBSCRIPTIONS_ACTIVE.labels(target=target).dec()


def inc_subscription_error(target: str) -> None:
	SUBSCRIPTION_ERRORS.labels(target=target).inc()


def inc_presence_toggle(state: bool) -> None:
	PRESENCE_TOGGLES.labels(state="here" if state else "away").inc()


def inc_presence_stale_correction() -> None:
	PRESENCE_STALE_CORRECTIONS.inc()


def inc_presence_write_failure() -> None:
	PRESENCE_WRITE_FAILURES.inc()


def inc_friend_request_sent(result: str) -> None:
	FRIEND_REQUESTS_SENT.labels(result=result).inc()


def inc_friend_reject(reason: str) -> None:
	FRIEND_REQUEST_REJECTS.labels(reason=reason).inc()


def inc_friendship_accepted() -> None:
	FRIENDSHIPS_ACCEPTED.inc()


def inc_friendship_removed() -> None:
	FRIENDSHIPS_REMOVED.inc()


def inc_partial_mutation(operation: str) -> None:
	PARTIAL_MUTATIONS.labels(operation=operation).inc()


def inc_roster_resubscribe() -> None:
	ROSTER_RESUBSCRIBES.inc()


def inc_roster_truncation() -> None:
	ROSTER_TRUNCATIONS.inc()


def inc_suggestion_run(result: str) -> None:
	SUGGESTION_RUNS.labels(result=result).inc()


def observe_suggestion_duration(seconds: float) -> None:
	SUGGESTION_DURATION.observe(seconds)


def session_started() -> None:
	SESSIONS_ACTIVE.inc()


def session_ended() -> None:
	SESSIONS_ACTIVE.dec()
