"""Middleware package for fleetguard."""

from fleetguard.app.middleware.admission import AdmissionMiddleware

__all__ = [
    "AdmissionMiddleware",
]
