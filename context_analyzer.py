from errors import ContextAnalysisError, MalformedVendorResponse
from models import ConversationContext

REQUIRED_FIELDS = ("trajectory", "topics", "intent", "sentiment", "urgency")


class ConversationAnalyzer:
    """Classifies trajectory, topics, intent, sentiment and urgency of a transcript."""

    PROMPT = '''
Analyze this customer support conversation and provide a JSON response.

Current segment: {transcript}

Provide analysis in this exact JSON format:
{{
  "trajectory": "improving" | "escalating" | "de-escalating" | "stable",
  "topics": ["topic1", "topic2"],
  "intent": "brief description of customer intent",
  "sentiment": "positive" | "negative" | "neutral",
  "urgency": 0-100
}}

Only respond with valid JSON, no additional text.
'''

    def __init__(self, llm):
        self.llm = llm

    def analyze(self, transcript) -> ConversationContext:
        """
        Raises ContextAnalysisError when the response cannot be parsed or any
        of the five fields is missing. Other vendor failures raise VendorError.
        """
        print("[PIPELINE] Analyzing conversation context")
        try:
            data = self.llm.complete_json(self.PROMPT.format(transcript=transcript))
        except MalformedVendorResponse as e:
            raise ContextAnalysisError(f"Failed to analyze conversation: {e}") from e

        return self.validate(data)

    @staticmethod
    def validate(data) -> ConversationContext:
        if not isinstance(data, dict):
            raise ContextAnalysisError("Invalid conversation context format")
        missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            raise ContextAnalysisError(
                f"Invalid conversation context format: missing {', '.join(missing)}"
            )

        try:
            urgency = float(data["urgency"])
        except (TypeError, ValueError) as e:
            raise ContextAnalysisError(f"Urgency is not a number: {data['urgency']!r}") from e

        for name in ("trajectory", "intent", "sentiment"):
            if not isinstance(data[name], str):
                raise ContextAnalysisError(f"{name} must be a string, got {data[name]!r}")

        topics = data["topics"]
        if isinstance(topics, str):
            topics = [topics]
        if not isinstance(topics, list):
            raise ContextAnalysisError(f"topics must be a list, got {topics!r}")
        topics = [str(t) for t in topics]

        return ConversationContext(
            trajectory=data["trajectory"],
            topics=topics,
            intent=data["intent"],
            sentiment=data["sentiment"],
            urgency=max(0.0, min(100.0, urgency)),
        )
