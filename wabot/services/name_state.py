import re
from enum import Enum
from typing import Optional

from wabot.models import ContactMemory


class NameStatus(str, Enum):
    """Stored progress of the name question for one contact."""

    UNASKED = "unasked"
    ASKED = "asked"
    CONFIRMED = "confirmed"


class NameState(str, Enum):
    """What the agent should do about the contact's name this turn."""

    CONFIRMED = "confirmed"
    AWAITING_RESPONSE = "awaiting_response"
    NEEDS_CONFIRMATION = "needs_confirmation"
    LIKELY_REAL = "likely_real"


class NameQuality(str, Enum):
    REAL = "real"
    SUSPICIOUS = "suspicious"
    UNKNOWN = "unknown"


VALID_TRANSITIONS = {
    NameStatus.UNASKED: [NameStatus.ASKED, NameStatus.CONFIRMED],
    NameStatus.ASKED: [NameStatus.CONFIRMED],
    NameStatus.CONFIRMED: [],
}

SUSPICIOUS_NAME_PATTERNS = (
    re.compile(r"^[a-z]\.[a-z]\.?$", re.IGNORECASE),  # g.s.
    re.compile(r"^[a-z]{1,2}$", re.IGNORECASE),  # gs
    re.compile(r"^.{1,3}$"),
    re.compile(r"[✨\U0001F31F\U0001F4AB⭐\U0001F525\U0001F496❤\U0001F338\U0001F33A]"),
    re.compile(r"^(m[ãa]e|pai|tia|tio|v[óo]|av[óo]|mom|mother|dad|father)\s", re.IGNORECASE),
    re.compile(r"^\+?\d[\d\s\-()]{9,}"),
    re.compile(r"^[^a-zA-ZÀ-ÿ\s]+$"),
    re.compile(r"^(admin|user|usuario|usuário|cliente|client|test|teste)", re.IGNORECASE),
)


class InvalidNameTransitionError(Exception):
    def __init__(self, from_status: NameStatus, to_status: NameStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid name transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: NameStatus, to_status: NameStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def transition(from_status: NameStatus, to_status: NameStatus) -> NameStatus:
    """Perform a status transition. Raises InvalidNameTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidNameTransitionError(from_status, to_status)
    return to_status


def get_name_status(memory: Optional[ContactMemory]) -> NameStatus:
    if memory is None or not memory.name_status:
        return NameStatus.UNASKED
    try:
        return NameStatus(memory.name_status)
    except ValueError:
        return NameStatus.UNASKED


def analyze_name_quality(name: Optional[str]) -> NameQuality:
    """Heuristic: does a WhatsApp display name look like a real full name?"""
    if not name or not name.strip():
        return NameQuality.UNKNOWN

    trimmed = name.strip()
    for pattern in SUSPICIOUS_NAME_PATTERNS:
        if pattern.search(trimmed):
            return NameQuality.SUSPICIOUS

    words = trimmed.split()
    first_word = words[0] if words else ""
    if len(words) >= 2 and len(first_word) >= 3 and len(trimmed) >= 5:
        return NameQuality.REAL

    # A lone first name is usable but incomplete.
    if len(first_word) >= 3 and re.fullmatch(r"[a-zA-ZÀ-ÿ]+", first_word):
        return NameQuality.SUSPICIOUS

    return NameQuality.UNKNOWN


def resolve_name_state(memory: Optional[ContactMemory], display_name: Optional[str]) -> NameState:
    status = get_name_status(memory)
    if status == NameStatus.CONFIRMED:
        return NameState.CONFIRMED
    if status == NameStatus.ASKED:
        return NameState.AWAITING_RESPONSE
    if analyze_name_quality(display_name) == NameQuality.REAL:
        return NameState.LIKELY_REAL
    return NameState.NEEDS_CONFIRMATION


def build_name_instruction(display_name: Optional[str], memory: Optional[ContactMemory]) -> str:
    """System prompt section telling the model how to handle the contact's name."""
    state = resolve_name_state(memory, display_name)

    if state == NameState.CONFIRMED:
        return (
            f'NAME CONFIRMED: "{display_name}"\n'
            "   The customer already confirmed this name. Do not ask again.\n"
            "   Use the name naturally in the conversation."
        )

    if state == NameState.AWAITING_RESPONSE:
        return (
            "WAITING FOR NAME CONFIRMATION\n"
            "   You already asked for the customer's name in this conversation.\n"
            "   Do NOT ask again. Wait for the answer or carry on normally.\n"
            "   If the customer tells you their name, call update_contact with name_was_confirmed: true."
        )

    if state == NameState.NEEDS_CONFIRMATION:
        return (
            "NAME NEEDS CONFIRMATION\n"
            f'   Current name: "{display_name or "not provided"}"\n'
            "   This name came from the WhatsApp profile and is probably NOT the real name.\n\n"
            "   WHAT TO DO:\n"
            "   1. In your FIRST reply, naturally ask for the customer's full name.\n"
            "   2. RIGHT AFTER asking, call the mark_name_asked tool.\n"
            "   3. When the customer answers, call update_contact with name_was_confirmed: true.\n\n"
            "   Do NOT call update_contact for the name unless the customer told you.\n"
            "   Do NOT ask for the name more than once."
        )

    return (
        f'NAME LOOKS CORRECT: "{display_name}"\n'
        "   The name looks real but was not confirmed by the customer.\n"
        "   You may use it normally.\n"
        "   If the customer corrects it, call update_contact with name_was_confirmed: true."
    )
