"""
Message templates for WhatsApp notifications.

Templates are plain strings with ``{{placeholder}}`` tokens. The active set
is read once per dispatch pass from the ``whatsapp_config`` store and falls
back to the built-in Spanish defaults below.
"""

import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from whatsapp_worker.models.db_models import WhatsAppConfig
from whatsapp_worker.notifications.exceptions import TemplateError

logger = logging.getLogger(__name__)


DEFAULT_TEMPLATE_KEY = "default"
TEMPLATES_CONFIG_KEY = "message_templates"

DEFAULT_TEMPLATES: Dict[str, str] = {
    "appointment_reminder": "Estimado/a {{patient_name}}, le recordamos su cita para el {{date}} a las {{time}}.",
    "payment_due": "Hola {{patient_name}}, tienes un pago pendiente de ${{amount}}.",
    "document_ready": "Hola {{patient_name}}, tu documento {{document_name}} está listo.",
    "payment_confirmed": "Hola {{patient_name}}, hemos confirmado tu pago de ${{amount}}.",
    "appointment_confirmed": "Hola {{patient_name}}, tu cita para el {{date}} a las {{time}} ha sido confirmada.",
}

# notification_type -> template key
TEMPLATE_KEY_MAP: Dict[str, str] = {
    "appointment_reminder": "appointment_reminder",
    "payment_due": "payment_due",
    "document_ready": "document_ready",
    "payment_confirmed": "payment_confirmed",
    "appointment_confirmed": "appointment_confirmation",
}


def render_template(template: str, variables: Optional[Mapping[str, Any]]) -> str:
    """
    Substitute ``{{key}}`` tokens with values from ``variables``.

    Every occurrence of each key is replaced; ``None`` renders as an empty
    string. Placeholders without a matching key are left verbatim, and
    values are inserted without escaping.
    """
    result = template
    for key, value in (variables or {}).items():
        result = result.replace(f"{{{{{key}}}}}", "" if value is None else str(value))
    return result


def resolve_template_key(notification_type: Optional[str]) -> str:
    """Map a notification type to its template key, ``"default"`` when unmapped."""
    return TEMPLATE_KEY_MAP.get(notification_type or "", DEFAULT_TEMPLATE_KEY)


def resolve_message(notification_type: Optional[str],
                    raw_message: str,
                    metadata: Mapping[str, Any],
                    templates: Mapping[str, str]) -> str:
    """
    Pick the text to send for a notification.

    The template is rendered only when ``metadata.use_template`` is truthy,
    ``metadata.template_variables`` is present (an empty mapping counts), and
    the resolved key exists in ``templates``. Otherwise the raw message is
    returned unchanged.
    """
    variables = metadata.get('template_variables')
    if not metadata.get('use_template') or variables is None:
        return raw_message

    key = resolve_template_key(notification_type)
    template = templates.get(key)
    if template is None:
        return raw_message

    return render_template(template, variables)


class TemplateStore(Protocol):
    """Source of the active template set."""

    def load_templates(self) -> Dict[str, str]:
        ...


class StaticTemplateStore:
    """In-memory template set."""

    def __init__(self, templates: Optional[Mapping[str, str]] = None):
        self._templates = dict(templates if templates is not None else DEFAULT_TEMPLATES)

    def load_templates(self) -> Dict[str, str]:
        return dict(self._templates)


class SqlTemplateStore:
    """Reads the template set from the ``whatsapp_config`` table."""

    def __init__(self, session_factory: Callable, config_key: str = TEMPLATES_CONFIG_KEY):
        self.session_factory = session_factory
        self.config_key = config_key

    def load_templates(self) -> Dict[str, str]:
        """
        Load templates, falling back to :data:`DEFAULT_TEMPLATES`.

        A missing row, an empty value, an undecodable value or a failed read
        all yield the defaults; the pass continues either way.
        """
        try:
            with self.session_factory() as session:
                value = session.execute(
                    select(WhatsAppConfig.config_value).where(WhatsAppConfig.config_key == self.config_key)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning(f"Could not read message templates, using defaults: {e}")
            return dict(DEFAULT_TEMPLATES)

        if not value:
            logger.debug("No message templates configured, using defaults")
            return dict(DEFAULT_TEMPLATES)

        try:
            return self._decode(value)
        except TemplateError as e:
            logger.warning(f"Invalid message templates in config store, using defaults: {e}")
            return dict(DEFAULT_TEMPLATES)

    @staticmethod
    def _decode(value: Any) -> Dict[str, str]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise TemplateError(f"config_value is not valid JSON: {e}")

        if not isinstance(value, dict):
            raise TemplateError(f"config_value must be an object, got {type(value).__name__}")

        return {str(key): str(template) for key, template in value.items() if template is not None}
