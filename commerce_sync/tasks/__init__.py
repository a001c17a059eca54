"""
Celery tasks package initialization.
"""
