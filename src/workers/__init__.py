"""
Workers module - Celery tasks for the graph pipeline.

Architecture:
    FastAPI API  ──submit──>  Redis Queue  ──consume──>  Celery Worker
                                                            │
    preprocess_batch_task ──staging──> index_batch_task ────┘
    Celery beat: reset_stale_batches_task, cleanup_staging_task

Start worker:
    celery -A src.workers.celery_app worker -l info -P solo -Q graph_pipeline

The -P solo pool is required because tasks use asyncio.run() internally.
"""

from src.workers.celery_app import celery_app

__all__ = [
    "celery_app",
]
