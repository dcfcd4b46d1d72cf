"""Celery task infrastructure package.

Importing this module wires together the configured Celery app and the
dispatcher facades that higher layers depend upon.
"""
from .config.celery import celery_app
from .utils.dispatcher import CeleryEventDispatcher, TaskDispatcher

__all__ = ["celery_app", "CeleryEventDispatcher", "TaskDispatcher"]
