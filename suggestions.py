import uuid

from errors import VendorError
from models import Suggestion

LLM_TRIGGER_LEVEL = 40
TRANSCRIPT_TAIL_CHARS = 500


class SuggestionEngine:
    """
    Rule thresholds over the emotion vector and context, plus at most one
    LLM-generated contextual suggestion.

    Every rule is evaluated independently, so several may fire for one chunk.
    Nothing is remembered between calls.
    """

    LLM_PROMPT = '''
You are an AI assistant helping customer support agents. Based on the current call state, provide ONE specific, actionable suggestion.

CURRENT STATE:
- Anger: {anger:.0f}%
- Frustration: {frustration:.0f}%
- Satisfaction: {satisfaction:.0f}%
- Trajectory: {trajectory}
- Sentiment: {sentiment}
- Topics: {topics}

RECENT TRANSCRIPT:
{transcript}

Provide a JSON response:
{{
  "text": "Specific action the agent should take",
  "reasoning": "Why this suggestion is relevant"
}}

Only respond with valid JSON, no additional text.
'''

    def __init__(self, llm=None):
        self.llm = llm

    def _make(self, call_id, kind, priority, text, reasoning, emotions):
        return Suggestion(
            id=str(uuid.uuid4()),
            call_id=call_id,
            kind=kind,
            priority=priority,
            text=text,
            reasoning=reasoning,
            timestamp_offset=emotions.timestamp,
        )

    def rule_suggestions(self, call_id, emotions, context=None):
        suggestions = []

        if emotions.anger > 60:
            suggestions.append(self._make(
                call_id, "escalation", "high",
                "Customer is showing high anger. Consider offering immediate escalation or compensation.",
                f"Anger level at {emotions.anger:.0f}%. Historical data shows this often leads to churn.",
                emotions,
            ))

        # The remaining rules need a context
        if context is None:
            return suggestions

        if emotions.frustration > 50 and context.trajectory == "escalating":
            suggestions.append(self._make(
                call_id, "frustration-escalating", "high",
                "Frustration is building and conversation is escalating. "
                "Acknowledge their concerns and provide a clear action plan.",
                f"Frustration at {emotions.frustration:.0f}% with escalating trajectory.",
                emotions,
            ))

        if emotions.satisfaction < 30 and context.urgency > 70:
            suggestions.append(self._make(
                call_id, "low-satisfaction-urgent", "high",
                "Low satisfaction with high urgency. Prioritize quick resolution and set clear expectations.",
                f"Satisfaction at {emotions.satisfaction:.0f}% with urgency level {context.urgency:g}/100.",
                emotions,
            ))

        if context.trajectory == "improving" and emotions.satisfaction > 60:
            suggestions.append(self._make(
                call_id, "positive-momentum", "medium",
                "Great job! Customer satisfaction is improving. Continue with current approach.",
                f"Positive trajectory with {emotions.satisfaction:.0f}% satisfaction.",
                emotions,
            ))

        return suggestions

    def generate(self, call_id, emotions, context=None, transcript=None):
        suggestions = self.rule_suggestions(call_id, emotions, context)

        if transcript and (emotions.anger > LLM_TRIGGER_LEVEL or emotions.frustration > LLM_TRIGGER_LEVEL):
            contextual = self._llm_suggestion(call_id, emotions, context, transcript)
            if contextual:
                suggestions.append(contextual)

        return suggestions

    def _llm_suggestion(self, call_id, emotions, context, transcript):
        if self.llm is None:
            return None
        prompt = self.LLM_PROMPT.format(
            anger=emotions.anger,
            frustration=emotions.frustration,
            satisfaction=emotions.satisfaction,
            trajectory=context.trajectory if context else "unknown",
            sentiment=context.sentiment if context else "unknown",
            topics=", ".join(context.topics) if context else "unknown",
            transcript=transcript[-TRANSCRIPT_TAIL_CHARS:],
        )
        try:
            data = self.llm.complete_json(prompt)
        except VendorError as e:
            print(f"[API ERROR] LLM suggestion generation failed: {e}")
            return None

        text = data.get("text")
        if not text:
            print("[API WARNING] LLM suggestion response had no text")
            return None
        return self._make(call_id, "contextual", "medium", str(text), str(data.get("reasoning") or ""), emotions)
