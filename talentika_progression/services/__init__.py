"""
Service Layer Package

- ProgressionService: facade over the progression & rewards engine
- ServiceContainer: builds the store and services from configuration
"""

from talentika_progression.services.container import ServiceContainer, get_container, init_container, reset_container
from talentika_progression.services.progression_service import ProgressionService

__all__ = [
    "ServiceContainer",
    "get_container",
    "init_container",
    "reset_container",
    "ProgressionService",
]
