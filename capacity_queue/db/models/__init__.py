"""Re-export all models so Base.metadata sees them."""

from capacity_queue.db.models.agent import AgentRecord
from capacity_queue.db.models.conversation_assignment import ConversationAssignment
from capacity_queue.db.models.queue_escalation import QueueEscalation
from capacity_queue.db.models.tenant_business_hours import TenantBusinessHours

__all__ = [
    "AgentRecord",
    "ConversationAssignment",
    "QueueEscalation",
    "TenantBusinessHours",
]
