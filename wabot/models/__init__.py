from wabot.models.ai_agent import AIAgent
from wabot.models.contact import Contact
from wabot.models.contact_memory import ContactMemory
from wabot.models.knowledge_chunk import KnowledgeChunk
from wabot.models.message import Message
from wabot.models.message_thread import MessageThread
from wabot.models.organization_integration import OrganizationIntegration
from wabot.models.product import Product

__all__ = [
    "AIAgent",
    "Contact",
    "ContactMemory",
    "KnowledgeChunk",
    "Message",
    "MessageThread",
    "OrganizationIntegration",
    "Product",
]
