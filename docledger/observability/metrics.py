"""
Prometheus metrics for the document ledger service.
"""

from prometheus_client import Counter, Histogram


# ── Pipeline ─────────────────────────────────────────────────
documents_registered_total = Counter(
    "documents_registered_total",
    "Total documents registered",
    ["mime_type"],
)

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Pipeline status transitions applied",
    ["from_status", "to_status"],
)

pipeline_failures_total = Counter(
    "pipeline_failures_total",
    "Pipeline failures recorded",
    ["error_code", "retryable"],
)

# ── Concurrency & Idempotency ────────────────────────────────
lock_conflicts_total = Counter(
    "lock_conflicts_total",
    "Mutations rejected by the optimistic version check",
    ["operation"],
)

idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Mutations answered from the idempotency cache",
    ["operation"],
)

# ── Pages ────────────────────────────────────────────────────
page_operations_total = Counter(
    "page_operations_total",
    "Split, append, rotate, reorder and page delete operations applied",
    ["operation"],
)

# ── Extraction ───────────────────────────────────────────────
extraction_jobs_total = Counter(
    "extraction_jobs_total",
    "Extraction jobs by outcome",
    ["outcome"],
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Time spent in the extraction capability",
    ["capability"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)

# ── Revisions ────────────────────────────────────────────────
revisions_created_total = Counter(
    "revisions_created_total",
    "Revisions created",
    ["revision_type"],
)

revisions_approved_total = Counter(
    "revisions_approved_total",
    "Revisions approved",
    ["validation_status"],
)

# ── Duplicates & Aliases ─────────────────────────────────────
duplicate_decisions_total = Counter(
    "duplicate_decisions_total",
    "Human duplicate decisions recorded",
    ["decision"],
)

alias_resolutions_total = Counter(
    "alias_resolutions_total",
    "Alias lookups by winning strategy",
    ["strategy"],
)
