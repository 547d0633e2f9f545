from errors import VendorError
from models import EmotionScores


def average_emotions(metrics):
    """Mean of each emotion axis over stored metrics; zeros when there are none."""
    if not metrics:
        return EmotionScores(anger=0, frustration=0, satisfaction=0, neutral=0, confidence=0, timestamp=0)
    count = len(metrics)
    return EmotionScores(
        anger=sum(m.anger for m in metrics) / count,
        frustration=sum(m.frustration for m in metrics) / count,
        satisfaction=sum(m.satisfaction for m in metrics) / count,
        neutral=sum(m.neutral for m in metrics) / count,
        confidence=sum(m.confidence for m in metrics) / count,
        timestamp=0,
    )


class SummaryGenerator:
    PROMPT = '''
Analyze this customer support call and generate a comprehensive summary.

CALL DETAILS:
- Duration: {duration} seconds
- Outcome: {outcome}
- Overall Sentiment: {sentiment}

TRANSCRIPT:
{transcript}

EMOTIONAL METRICS:
- Average Anger: {anger:.0f}%
- Average Frustration: {frustration:.0f}%
- Average Satisfaction: {satisfaction:.0f}%

Provide a JSON response with this structure:
{{
  "overview": "2-3 sentence summary of the call",
  "keyTopics": ["topic1", "topic2", "topic3"],
  "emotionalTrajectory": "Description of how emotions evolved",
  "criticalMoments": ["moment1", "moment2"],
  "outcome": "What was the final result",
  "agentPerformance": {{
    "strengths": ["strength1", "strength2"],
    "improvements": ["improvement1", "improvement2"]
  }},
  "recommendations": ["recommendation1", "recommendation2"]
}}

Only respond with valid JSON, no additional text.
'''

    def __init__(self, llm):
        self.llm = llm

    def generate(self, call, turns, metrics):
        transcript = "\n".join(f"[{t.speaker.upper()}]: {t.transcript}" for t in turns)
        averages = average_emotions(metrics)

        prompt = self.PROMPT.format(
            duration=call.duration_seconds or 0,
            outcome=call.outcome or "unknown",
            sentiment=call.overall_sentiment or "unknown",
            transcript=transcript,
            anger=averages.anger,
            frustration=averages.frustration,
            satisfaction=averages.satisfaction,
        )

        try:
            data = self.llm.complete_json(prompt)
        except VendorError as e:
            print(f"[API ERROR] Summary generation failed: {e}")
            return self.fallback(call, averages)

        if not isinstance(data, dict) or not data.get("overview"):
            print("[API WARNING] Summary response had no overview, using basic summary")
            return self.fallback(call, averages)
        return self._normalize(data)

    @staticmethod
    def fallback(call, averages):
        return {
            "overview": f"Call lasted {call.duration_seconds or 0} seconds with {call.outcome or 'unknown'} outcome.",
            "keyTopics": ["General inquiry"],
            "emotionalTrajectory": f"Average satisfaction: {averages.satisfaction:.0f}%",
            "criticalMoments": [],
            "outcome": call.outcome or "Unknown",
            "agentPerformance": {
                "strengths": [],
                "improvements": []
            },
            "recommendations": []
        }

    @staticmethod
    def _normalize(data):
        def as_list(value):
            return list(value) if isinstance(value, list) else []

        performance = data.get("agentPerformance")
        if not isinstance(performance, dict):
            performance = {}
        return {
            "overview": str(data.get("overview", "")),
            "keyTopics": as_list(data.get("keyTopics")),
            "emotionalTrajectory": str(data.get("emotionalTrajectory", "")),
            "criticalMoments": as_list(data.get("criticalMoments")),
            "outcome": str(data.get("outcome", "")),
            "agentPerformance": {
                "strengths": as_list(performance.get("strengths")),
                "improvements": as_list(performance.get("improvements")),
            },
            "recommendations": as_list(data.get("recommendations")),
        }
