"""
Celery application for TASK_QUEUE=celery.

Analysis runs are long (deep research alone can take several minutes), so a
worker takes one job at a time and acknowledges it only once the
orchestrator has written a terminal status. Without a reachable broker the
app switches to eager mode and the dispatcher runs jobs in-process instead.
"""
import logging

from celery import Celery

from insight_engine.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_BROKER_URL = "redis://localhost:6379/0"
# parsing is instant; prompting, researching and synthesizing each get a stage timeout
TIMED_STAGES = 3


def broker_reachable(url: str) -> bool:
    try:
        import redis
        redis.from_url(url, socket_connect_timeout=1).ping()
    except Exception as e:
        logger.warning(f"[Celery] Redis not available ({e}).")
        return False
    return True


def get_celery_app(config=settings) -> Celery:
    broker_url = config.REDIS_URL or DEFAULT_BROKER_URL
    stage_timeout = int(config.STAGE_TIMEOUT_SECONDS)

    app = Celery(
        "insight_engine_tasks",
        broker=broker_url,
        backend=broker_url,
        include=["insight_engine.tasks"],
    )
    app.conf.update(
        result_expires=86400,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        # the orchestrator enforces stage timeouts; these only catch a hung worker
        task_soft_time_limit=stage_timeout * TIMED_STAGES + 60,
        task_time_limit=stage_timeout * TIMED_STAGES + 120,
        broker_transport_options={"visibility_timeout": stage_timeout * (TIMED_STAGES + 1)},
    )

    if broker_reachable(broker_url):
        logger.info(f"[Celery] Connected to Redis at {broker_url}")
    else:
        logger.warning("[Celery] Running in SYNC mode (task_always_eager=True).")
        app.conf.update(task_always_eager=True, task_eager_propagates=True)

    return app


celery_app = get_celery_app()
