"""Convenience entry point for running the payments Celery worker.

Equivalent to ``celery -A infrastructure.tasks.config.celery:celery_app worker -Q high,default``.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(argv=["worker", "--loglevel=INFO", "--queues=high,default", "--hostname=payments@%h"])


if __name__ == "__main__":
    main()
