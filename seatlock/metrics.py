from prometheus_client import Counter, Gauge, Histogram

# Seat lock metrics
SEAT_LOCK_LATENCY = Histogram(
    "seatlock_operation_latency_seconds", "Latency for seat lock operations", ["operation"]
)
SEAT_LOCK_ATTEMPTS = Counter(
    "seatlock_operations_total", "Seat lock operations by outcome", ["operation", "result"]
)
SEAT_LOCK_STORE_RETRIES = Counter(
    "seatlock_store_retries_total", "Lock store calls retried after a transient error", ["operation"]
)
SEAT_LOCK_TRANSFERS = Counter(
    "seatlock_transferred_seats_total", "Guest seats handled during login transfer", ["outcome"]
)

# Sweeper metrics
SWEEP_RECLAIMED = Counter("seatlock_sweep_reclaimed_total", "Expired lock records deleted by the sweeper")
SWEEP_LAST_RUN = Gauge("seatlock_sweep_last_run_timestamp", "Unix time of the last completed sweep")
SWEEP_FAILURES = Counter("seatlock_sweep_failures_total", "Sweeps that raised an error")
