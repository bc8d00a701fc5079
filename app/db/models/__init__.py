"""
Database Models
"""
from app.db.models.ride import RideRecord

__all__ = [
    "RideRecord",
]
