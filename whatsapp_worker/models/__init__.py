"""
Persistence models for the dispatch worker.
"""

from .db_models import Base, SystemNotification, WhatsAppConfig, utc_now

__all__ = [
    'Base',
    'SystemNotification',
    'WhatsAppConfig',
    'utc_now',
]
