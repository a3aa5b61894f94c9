from wabot.services.name_state import (
    InvalidNameTransitionError,
    NameState,
    NameStatus,
    build_name_instruction,
    can_transition,
    resolve_name_state,
    transition,
)
from wabot.services.product_detector import detect_products, is_disambiguation_message
from wabot.services.rag_service import RAGContext, format_rag_context, get_relevant_context
from wabot.services.result import Result
