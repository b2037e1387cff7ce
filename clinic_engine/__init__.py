"""
Clinic Encounter Engine

Appointment lifecycle, encounter orchestration, day timeline layout,
clinical alerts and a unified notification feed, served through FastAPI.
"""

__version__ = "1.0.0"
