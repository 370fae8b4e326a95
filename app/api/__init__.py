"""
API Module Initialization

Exports the HTTP routers mounted by the application.
"""

from app.api.appointments import router as appointments_router
from app.api.availability import router as availability_router
from app.api.jobs import router as jobs_router
from app.api.reservations import router as reservations_router

__all__ = [
    "appointments_router",
    "availability_router",
    "jobs_router",
    "reservations_router",
]
