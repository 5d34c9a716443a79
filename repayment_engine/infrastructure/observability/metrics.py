"""Prometheus metrics for payment outcomes, queue health and SMS delivery"""

from prometheus_client import Counter, Histogram

# Transaction metrics
transaction_counter = Counter(
    "repayment_transactions_total",
    "C2B transactions processed",
    ["outcome"],  # applied | skipped | suspense | failed
)

wallet_credit_counter = Counter(
    "repayment_wallet_credits_total",
    "Wallet credits by reference type",
    ["ref_type"],  # mpesa | registration | fee | overpayment
)

# Queue metrics
queue_job_counter = Counter(
    "repayment_queue_jobs_total",
    "Queue jobs handled",
    ["job_type", "outcome"],  # completed | queued | dead | released | claim_lost
)

stuck_jobs_recovered_counter = Counter(
    "repayment_stuck_jobs_recovered_total",
    "Queue jobs requeued after exceeding the processing timeout",
)

# SMS provider metrics
sms_sent_counter = Counter(
    "repayment_sms_sent_total",
    "Payment confirmation SMS delivered to the provider",
)

sms_failure_counter = Counter(
    "repayment_sms_failures_total",
    "Failed SMS provider calls",
)

sms_latency_histogram = Histogram(
    "sms_provider_latency_seconds",
    "SMS provider response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_process_result(status: str) -> None:
    transaction_counter.labels(outcome=status).inc()


def record_queue_job(job_type: str, outcome: str) -> None:
    queue_job_counter.labels(job_type=job_type, outcome=outcome).inc()
