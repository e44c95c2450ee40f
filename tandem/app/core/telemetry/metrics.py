############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# metrics.py: Prometheus metrics for the scheduling engine
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Prometheus metrics shared by the arbiter, synthesis engine and pipeline."""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "tandem_requests_total",
    "Total number of requests",
    ["endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "tandem_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)
LOCK_ACQUISITIONS = Counter(
    "tandem_accelerator_acquisitions_total",
    "Accelerator lock acquisition attempts",
    ["workload", "outcome"],  # acquired, reentrant, busy, thermal, forced
)
LOCK_HELD = Gauge(
    "tandem_accelerator_lock_held",
    "1 while a request holds the accelerator lock",
)
LOCK_HOLD_SECONDS = Histogram(
    "tandem_accelerator_lock_hold_seconds",
    "How long the accelerator lock was held",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
EVICTIONS = Counter(
    "tandem_model_evictions_total",
    "Models evicted to make room for another workload",
    ["workload"],
)
ACCELERATOR_TEMPERATURE = Gauge(
    "tandem_accelerator_temperature_celsius",
    "Last sampled accelerator temperature",
)
ACCELERATOR_VRAM_FREE = Gauge(
    "tandem_accelerator_vram_free_mib",
    "Last sampled free accelerator memory",
)
SYNTHESIS_OUTCOMES = Counter(
    "tandem_synthesis_outcomes_total",
    "Synthesis collapse strategies",
    ["strategy"],
)
RENDER_ATTEMPTS = Counter(
    "tandem_render_attempts_total",
    "Diffusion render attempts",
    ["attempt"],
)
EVALUATION_OUTCOMES = Counter(
    "tandem_evaluation_checks_total",
    "Image evaluation check results",
    ["check", "status"],
)
CONTROLLER_TERMINALS = Counter(
    "tandem_controller_terminal_states_total",
    "Requests reaching a terminal lifecycle state",
    ["state"],
)
