"""
Services package initialization.
Import and expose service instances.
"""

from receptionist.services.organization_resolver import organization_resolver
from receptionist.services.channel_config_service import channel_config_service
from receptionist.services.conversation_state import session_registry, conversation_store
from receptionist.services.booking_client import booking_client
from receptionist.services.orchestrator_service import orchestrator_service
from receptionist.services.webhook_reconciler import webhook_reconciler
from receptionist.services.notification_service import notification_dispatcher
