"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .jira import router as jira_router
from .sprints import router as sprints_router

__all__ = [
    "sprints_router",
    "jira_router",
]
