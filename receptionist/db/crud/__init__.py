"""
CRUD operations package.
"""

# Import from base crud module
from ..base_crud import (
    get_conversation_by_session_id, get_conversation_by_call_id, create_or_find_conversation,
    merge_conversation_fields, update_conversation,
    get_max_sequence_num, create_message, get_messages,
    create_function_call_record, get_function_call_records
)

from .organization_crud import (
    get_organization, get_active_organization_by_slug, get_organization_id_by_phone,
    get_organization_id_by_agent, get_oldest_organization
)

from .channel_config_crud import get_channel_config_row, get_channel_config_rows

from .notification_crud import (
    get_pending_notification, upsert_pending_notification, claim_notification, resolve_notification
)
