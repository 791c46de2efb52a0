"""
Prompt construction for initial and follow-up conversations.

Everything here is pure: the same inputs always give the same prompt text.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

DEFAULT_MAX_HISTORY = 20

WELLNESS_PERSONA = """You are a helpful AI conversation partner specializing in health and wellness.
You should be empathetic, insightful, and encourage deeper exploration of health topics.
Always ask follow-up questions to keep the conversation engaging."""

ASSESSMENT_PERSONA = """You are a helpful AI conversation partner specializing in menstrual health and wellness.
You should be empathetic, insightful, and encourage deeper exploration of health topics.
Always ask follow-up questions to keep the conversation engaging."""

FOLLOW_UP_PERSONA = """You are a helpful AI conversation partner continuing an ongoing discussion.
Be contextually aware of the conversation history and build upon previous exchanges.
Provide thoughtful, relevant responses that advance the conversation meaningfully.
Ask insightful follow-up questions to deepen understanding."""

TOPIC_KEYWORDS = {
    "cycle": ["cycle", "period", "flow", "irregular", "late"],
    "pain": ["pain", "cramp", "ache", "hurt"],
    "mood": ["mood", "anxious", "stress", "sad", "irritable"],
    "assessment": ["assessment", "test", "result", "score"],
}

POSITIVE_WORDS = ["good", "great", "love", "like", "awesome", "helpful", "better"]
NEGATIVE_WORDS = ["bad", "confused", "frustrated", "difficult", "unclear", "worse"]


@dataclass(frozen=True)
class PromptMessage:
    """One entry of a chat-history prompt"""
    role: str
    content: str


@dataclass(frozen=True)
class ConversationPatterns:
    summary: str
    topics: List[str] = field(default_factory=list)
    sentiment: str = "neutral"
    message_count: int = 0


def _value(snapshot: dict, key: str, suffix: str = "") -> str:
    value = snapshot.get(key)
    if value is None or value == "":
        return "not specified"
    return f"{value}{suffix}"


def _symptoms(snapshot: dict, key: str) -> str:
    symptoms = snapshot.get(key) or []
    if isinstance(symptoms, str):
        symptoms = [symptoms]
    return ", ".join(str(s) for s in symptoms) or "none reported"


def build_initial_prompt(assessment: Optional[dict]) -> str:
    """
    Build the system prompt for a brand new conversation.

    Args:
        assessment: Assessment snapshot (pattern, cycle_length, period_duration,
            pain_level, physical_symptoms, emotional_symptoms) or None

    Returns:
        System prompt text
    """
    if not assessment:
        return WELLNESS_PERSONA

    return f"""{ASSESSMENT_PERSONA}

The user has completed a menstrual health assessment with the following results:
- Pattern: {_value(assessment, "pattern")}
- Cycle length: {_value(assessment, "cycle_length", " days")}
- Period duration: {_value(assessment, "period_duration", " days")}
- Pain level: {_value(assessment, "pain_level", "/10")}
- Physical symptoms: {_symptoms(assessment, "physical_symptoms")}
- Emotional symptoms: {_symptoms(assessment, "emotional_symptoms")}

Help them understand their results, provide appropriate guidance, and explore what these patterns mean for their health and wellbeing."""


def build_follow_up_system_prompt(assessment_pattern: Optional[str] = None) -> str:
    prompt = FOLLOW_UP_PERSONA
    if assessment_pattern:
        prompt += (
            f"\n\nThis conversation involves the user's {assessment_pattern} assessment results.\n"
            "Continue to help them explore and understand their results in the context of our ongoing discussion."
        )
    return prompt


def analyze_conversation(prior_messages: Iterable) -> ConversationPatterns:
    """Summarize topics and sentiment of the user's side of the conversation"""
    user_texts = [m.content for m in prior_messages if m.role == "user"]
    all_text = " ".join(user_texts).lower()

    topics = [
        topic for topic, keywords in TOPIC_KEYWORDS.items()
        if any(keyword in all_text for keyword in keywords)
    ] or ["general"]

    has_positive = any(word in all_text for word in POSITIVE_WORDS)
    has_negative = any(word in all_text for word in NEGATIVE_WORDS)
    if has_positive and not has_negative:
        sentiment = "positive"
    elif has_negative and not has_positive:
        sentiment = "negative"
    else:
        sentiment = "neutral"

    return ConversationPatterns(
        summary=f"{len(user_texts)} user messages, topics: {', '.join(topics)}, sentiment: {sentiment}",
        topics=topics,
        sentiment=sentiment,
        message_count=len(user_texts),
    )


def build_follow_up_prompt(
    assessment_pattern: Optional[str],
    prior_messages: List,
    max_history: int = DEFAULT_MAX_HISTORY,
) -> List[PromptMessage]:
    """
    Format conversation history for a follow-up generation call.

    Args:
        assessment_pattern: Pattern from the conversation's assessment, if any
        prior_messages: Messages already in the conversation, oldest first
        max_history: Only the most recent N messages are kept

    Returns:
        System message followed by the truncated history in chronological order
    """
    patterns = analyze_conversation(prior_messages)
    system_prompt = build_follow_up_system_prompt(assessment_pattern)
    system_prompt += f"\n\nConversation context: {patterns.summary}"

    recent = list(prior_messages)[-max_history:] if max_history > 0 else []
    history = [PromptMessage(role="system", content=system_prompt)]
    history.extend(PromptMessage(role=m.role, content=m.content) for m in recent)
    return history
