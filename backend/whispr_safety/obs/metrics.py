"""Central registry for Prometheus metrics used by the safety engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

LOCAL_SCANS_TOTAL = Counter(
	"whispr_local_scans_total",
	"Local moderation scans by recommended action",
	["action"],
)

LOCAL_SCAN_REJECTIONS_TOTAL = Counter(
	"whispr_local_scan_rejections_total",
	"Local moderation scans rejected before scoring",
	["reason"],
)

SCAN_LATENCY_SECONDS = Histogram(
	"whispr_local_scan_latency_seconds",
	"Local moderation scan latency in seconds",
	buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)

REPUTATION_UPDATES_TOTAL = Counter(
	"whispr_reputation_updates_total",
	"Reputation mutations applied",
	["kind"],
)

REPUTATION_WRITE_CONFLICTS_TOTAL = Counter(
	"whispr_reputation_write_conflicts_total",
	"Optimistic reputation writes retried after a concurrent update",
)

REPUTATION_LEVEL_CHANGES_TOTAL = Counter(
	"whispr_reputation_level_changes_total",
	"Reputation level transitions",
	["from_level", "to_level"],
)

BANNED_USERS_GAUGE = Gauge(
	"whispr_banned_users",
	"Users currently at the banned reputation level",
)

MOD_REPORTS_TOTAL = Counter(
	"whispr_mod_reports_total",
	"Moderation reports created",
	["category", "priority"],
)

MOD_REPORT_MERGES_TOTAL = Counter(
	"whispr_mod_report_merges_total",
	"Repeat reports merged into an existing report",
	["category"],
)

MOD_REPORT_WRITE_CONFLICTS_TOTAL = Counter(
	"whispr_mod_report_write_conflicts_total",
	"Report writes retried after losing an optimistic update",
	["operation"],
)

MOD_REPORTS_REJECTED_TOTAL = Counter(
	"whispr_mod_reports_rejected_total",
	"Report submissions refused",
	["reason"],
)

MOD_ESCALATIONS_TOTAL = Counter(
	"whispr_mod_escalations_total",
	"Moderation escalations processed",
	["tier", "content_type"],
)

MOD_REPORT_TRANSITIONS_TOTAL = Counter(
	"whispr_mod_report_transitions_total",
	"Report status transitions",
	["transition"],
)

MOD_RESOLUTIONS_TOTAL = Counter(
	"whispr_mod_resolutions_total",
	"Report resolutions by action",
	["action"],
)
