"""
Call attempt registry, queue, retry scheduling and dispatch.

Keep this lightweight: importing ORM models here would map them at import
time for every submodule.
"""

__all__: list[str] = []
