"""
WhatsApp Dispatch Worker - queued WhatsApp notification delivery.

Drains the notification queue through the WhatsApp messaging gateway,
rendering templates and normalizing Argentine mobile numbers, and re-routes
notifications to email while the gateway is disconnected.
"""

__version__ = "1.0.0"
__author__ = "WhatsApp Dispatch Worker Team"
