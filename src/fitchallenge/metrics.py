from prometheus_client import Counter, Histogram, start_http_server
from .config import settings
from .utils.logging import setup_logger

logger = setup_logger(__name__)

# Recorder metrics
activities_recorded_total = Counter(
    'activities_recorded_total',
    'Total number of activity rows stored',
    ['metric']
)

# Evaluator metrics
points_awarded_total = Counter(
    'points_awarded_total',
    'Total number of challenge points credited to participants',
    ['timeframe']
)

points_award_failures_total = Counter(
    'points_award_failures_total',
    'Rule evaluations that failed and awarded nothing',
    ['stage']
)

activity_evaluation_duration = Histogram(
    'activity_evaluation_duration_seconds',
    'Time spent matching one activity against challenge rules'
)

# Catalog metrics
challenge_joins_total = Counter(
    'challenge_joins_total',
    'Join and rejoin attempts',
    ['outcome']
)

# Task metrics
task_total = Counter(
    'celery_task_total',
    'Total number of tasks processed',
    ['task_name', 'status']
)

task_duration = Histogram(
    'celery_task_duration_seconds',
    'Task processing duration in seconds',
    ['task_name']
)

def start_metrics_server(port: int = None):
    """Start the Prometheus metrics server."""
    if port is None:
        port = settings.metrics_port
    try:
        start_http_server(port)
        logger.info(f"Started Prometheus metrics server on port {port}")
    except Exception as e:
        logger.error(f"Failed to start metrics server: {e}")
        raise
