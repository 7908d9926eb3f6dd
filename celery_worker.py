"""Celery worker entry point bound to a configured Flask app."""

from app import create_app
from celery_app import celery  # noqa: F401

app = create_app()
