"""
WhatsApp gateway integration.
"""

from whatsapp_worker.api.gateway_client import WhatsAppGatewayClient

__all__ = [
    'WhatsAppGatewayClient',
]
