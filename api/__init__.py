"""
API Package
============

Database models and utilities for synced sprints and tickets.
"""

from api.database import Sprint, SprintSnapshot, Ticket, UserIntegration, create_database

__all__ = ["Sprint", "SprintSnapshot", "Ticket", "UserIntegration", "create_database"]
