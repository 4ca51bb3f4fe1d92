"""
Celery tasks for background processing.
"""

from crave_pipeline.tasks.processing import process_post

__all__ = ["process_post"]
