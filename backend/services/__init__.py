"""
Services for the vendor discovery backend
"""

from .discovery_pipeline import DiscoveryPipeline
from .scheduler import JobNotFoundError, JobScheduler

__all__ = [
    "DiscoveryPipeline",
    "JobNotFoundError",
    "JobScheduler",
]
