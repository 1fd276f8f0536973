from celery import Celery
from .config import settings
import logging

logging.getLogger('celery.backends.redis').setLevel(logging.ERROR)

celery_app = Celery(
    "celts_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        'celts.tasks.grading',
        'celts.tasks.maintenance',
    ]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    task_routes={
        'celts.tasks.grading.*': {'queue': 'grading'},
        'celts.tasks.maintenance.*': {'queue': 'maintenance'},
    },

    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,

    # AI grading of a multi-task writing submission can be slow
    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,
    broker_connection_retry_on_startup=True,
    broker_transport_options={
        'visibility_timeout': 3600,
    },

    beat_schedule={
        'expire-overdue-attempts': {
            'task': 'celts.tasks.maintenance.expire_overdue_attempts',
            'schedule': float(settings.timer_cleanup_interval_seconds),
        },
        'cleanup-stale-attempts': {
            'task': 'celts.tasks.maintenance.cleanup_stale_attempts',
            'schedule': 3600.0,
        },
        'expire-idle-sessions': {
            'task': 'celts.tasks.maintenance.expire_idle_sessions',
            'schedule': 600.0,
        },
    },
)

if __name__ == '__main__':
    celery_app.start()
