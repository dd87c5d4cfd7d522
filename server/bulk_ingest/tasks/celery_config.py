"""Celery configuration for the import worker.

Import jobs carry their own checkpoint (``last_processed_row``) and are
resumed through the API, so the broker never redelivers or retries them.
"""

from kombu import Exchange, Queue

from bulk_ingest.core.config import get_settings

_settings = get_settings()

IMPORT_QUEUE = "imports"
IMPORT_TASK = "bulk_ingest.tasks.import_tasks.process_import_job"

# ==============================================================================
# BROKER
# ==============================================================================

broker_connection_retry_on_startup = True
broker_connection_max_retries = 10
broker_pool_limit = _settings.max_concurrent_jobs + 2
broker_heartbeat = 30

# ==============================================================================
# RESULTS
# ==============================================================================

# The job row is the source of truth; task results only help debugging.
result_expires = _settings.progress_ttl_seconds
result_backend_transport_options = {"retry_on_timeout": True}
task_ignore_result = False

task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]
enable_utc = True
timezone = "UTC"

# ==============================================================================
# DELIVERY
# ==============================================================================

task_acks_late = True
task_reject_on_worker_lost = False
task_track_started = True
task_default_delivery_mode = 2

# A worker slot holds one job for its whole run.
worker_prefetch_multiplier = 1
# a redelivered job is taken over, so the old run must not keep writing
worker_cancel_long_running_tasks_on_connection_loss = True
worker_concurrency = _settings.max_concurrent_jobs
worker_max_tasks_per_child = 50

# ==============================================================================
# QUEUES AND ROUTING
# ==============================================================================

import_exchange = Exchange(IMPORT_QUEUE, type="direct", durable=True)

task_queues = (Queue(IMPORT_QUEUE, exchange=import_exchange, routing_key="import.job", durable=True),)
task_default_queue = IMPORT_QUEUE
task_routes = {IMPORT_TASK: {"queue": IMPORT_QUEUE, "routing_key": "import.job"}}

beat_schedule = {
    "recover-stale-import-jobs": {
        "task": "bulk_ingest.tasks.import_tasks.recover_stale_jobs",
        "schedule": max(_settings.stale_job_seconds // 3, 60),
        "options": {"queue": IMPORT_QUEUE},
    },
}

task_annotations = {
    IMPORT_TASK: {
        "time_limit": _settings.job_time_limit_seconds,
        "soft_time_limit": max(_settings.job_time_limit_seconds - 300, 30),
    },
}

# ==============================================================================
# LOGGING
# ==============================================================================

worker_hijack_root_logger = False
worker_log_format = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
worker_task_log_format = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
