"""
Deterministic replies used when the generation endpoint cannot answer
"""
from enum import Enum
from typing import Optional


class FallbackKind(str, Enum):
    QUESTION = "question"
    CONCERN = "concern"
    GENERAL = "general"


CONCERN_KEYWORDS = ("concern", "worried", "worry", "confused", "scared", "anxious")
QUESTION_KEYWORDS = ("question", "?")

FOLLOW_UP_TEMPLATES = {
    FallbackKind.QUESTION: "Let me help address your question and explore this topic further with you.",
    FallbackKind.CONCERN: (
        "I can understand why that feels worrying. Let's break it down step by step, "
        "and please reach out to a healthcare provider if anything feels urgent."
    ),
    FallbackKind.GENERAL: "What are your thoughts on this, and how does it connect to what we've been discussing?",
}


def classify(last_user_message: Optional[str]) -> FallbackKind:
    """Pick a fallback template from keywords in the user's last message"""
    text = (last_user_message or "").lower()
    if any(keyword in text for keyword in QUESTION_KEYWORDS):
        return FallbackKind.QUESTION
    if any(keyword in text for keyword in CONCERN_KEYWORDS):
        return FallbackKind.CONCERN
    return FallbackKind.GENERAL


def initial_fallback(assessment: Optional[dict]) -> str:
    if not assessment:
        return "Hello! I'm here to have a conversation with you. How can I help you today?"

    pattern = assessment.get("pattern") or "unique"
    pain_level = assessment.get("pain_level")
    cycle_length = assessment.get("cycle_length")
    details = " There's"
    if pain_level is not None and cycle_length is not None:
        details = f" With a {pain_level}/10 pain level and {cycle_length}-day cycles, there's"
    return (
        f"Hello! I see you've shared your menstrual health assessment results showing a {pattern} pattern."
        f"{details} valuable information we can explore together. "
        "What aspects of your results would you like to discuss first?"
    )


def follow_up_fallback(last_user_message: Optional[str], assessment_pattern: Optional[str] = None) -> str:
    opener = "Thank you for sharing that with me. "
    if assessment_pattern:
        opener = f"Thank you for continuing our discussion about your {assessment_pattern} assessment. "
    return opener + FOLLOW_UP_TEMPLATES[classify(last_user_message)]
