from prometheus_client import Counter, Histogram

# -------------------------
# Analysis (router + pipeline)
# -------------------------

ANALYSIS_REQUESTS_TOTAL = Counter(
    "analysis_requests_total",
    "Total image analysis requests",
    ["mode", "result"],
)

ANALYSIS_SECONDS = Histogram(
    "analysis_seconds",
    "Time spent in the selected backend per analysis",
    ["mode"],
)

# -------------------------
# Cloud endpoint
# -------------------------

CLOUD_ATTEMPTS_TOTAL = Counter(
    "cloud_attempts_total",
    "Individual HTTPS attempts made by the cloud adapter",
    ["outcome"],  # ok | client_error | server_error | network_error
)

# -------------------------
# Plugins
# -------------------------

PLUGIN_EXECUTIONS_TOTAL = Counter(
    "plugin_executions_total",
    "Post-processing plugin executions",
    ["plugin", "result"],  # ok | failed | not_found
)

ANALYSIS_REJECTED_TOTAL = Counter(
    "analysis_rejected_total",
    "Analyses refused a slot by the per-workspace concurrency limit",
    ["reason"],  # QUEUE_FULL | REQUEST_CANCELLED
)
