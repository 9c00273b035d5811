from prometheus_client import Counter, Histogram


# ---- API ----
comments_total = Counter("comments_total", "Total comments received")
analysis_jobs_enqueued_total = Counter("analysis_jobs_enqueued_total", "Analysis jobs submitted to the queue")

# ---- Worker ----
analysis_jobs_completed_total = Counter("analysis_jobs_completed_total", "Analysis jobs finished successfully")
analysis_jobs_failed_total = Counter("analysis_jobs_failed_total", "Analysis job attempts that failed")
analysis_job_latency_ms = Histogram(
    "analysis_job_latency_ms",
    "Analysis job end-to-end latency (ms)",
    buckets=(500, 1000, 2500, 5000, 10000, 30000, 60000, 120000, 300000),
)

# ---- Agents ----
agent_latency_ms = Histogram(
    "agent_latency_ms",
    "Per-agent phase latency (ms)",
    ["agent"],
    buckets=(250, 500, 1000, 2500, 5000, 10000, 30000, 60000),
)
agent_no_object_total = Counter(
    "agent_no_object_total",
    "LLM calls that produced no object and were treated as empty results",
    ["agent"],
)
