"""Utility helpers for Celery tasks."""
from .dispatcher import CeleryEventDispatcher, TaskDispatcher
from .base_task import BaseTask

__all__ = ["CeleryEventDispatcher", "TaskDispatcher", "BaseTask"]
