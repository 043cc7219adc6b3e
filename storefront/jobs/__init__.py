"""
Background Jobs Module

Handles scheduled tasks for:
- Expired order lookup code and token cleanup
"""

from storefront.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from storefront.jobs.lookup_jobs import purge_expired_lookup_credentials

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "purge_expired_lookup_credentials",
]
