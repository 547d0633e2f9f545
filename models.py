"""Data models for calls, turns, emotion metrics and suggestions.

Documents are stored with snake_case keys; ``to_dict`` produces the camelCase
shape returned by the HTTP API.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CALL_OUTCOMES = ("successful", "escalated", "unresolved", "churn")


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value):
    """MongoDB hands datetimes back naive; treat them as UTC."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value):
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


def _clamp(value, low, high):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return low
    return max(low, min(high, value))


@dataclass
class EmotionScores:
    """Four-axis emotion vector (0-100) plus a confidence scalar (0-1)."""
    anger: float = 0.0
    frustration: float = 0.0
    satisfaction: float = 0.0
    neutral: float = 0.0
    confidence: float = 0.0
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def __post_init__(self):
        self.anger = _clamp(self.anger, 0.0, 100.0)
        self.frustration = _clamp(self.frustration, 0.0, 100.0)
        self.satisfaction = _clamp(self.satisfaction, 0.0, 100.0)
        self.neutral = _clamp(self.neutral, 0.0, 100.0)
        self.confidence = _clamp(self.confidence, 0.0, 1.0)

    def to_dict(self):
        return asdict(self)


@dataclass
class ConversationContext:
    trajectory: str
    topics: List[str]
    intent: str
    sentiment: str
    urgency: float

    def to_dict(self):
        return asdict(self)


@dataclass
class TranscriptSegment:
    text: str
    confidence: float = 0.9
    speaker: str = "customer"
    timestamp_offset: float = 0.0  # seconds from the start of the audio
    is_final: bool = True

    def to_dict(self):
        return {
            "text": self.text,
            "confidence": self.confidence,
            "speaker": self.speaker,
            "timestampOffset": self.timestamp_offset,
            "isFinal": self.is_final,
        }


@dataclass
class TranscriptionResult:
    segments: List[TranscriptSegment] = field(default_factory=list)
    full_transcript: str = ""
    error: Optional[str] = None  # set when the vendor call failed

    @classmethod
    def empty(cls, error=None):
        return cls(segments=[], full_transcript="", error=error)

    def to_dict(self):
        return {
            "segments": [s.to_dict() for s in self.segments],
            "fullTranscript": self.full_transcript,
        }


@dataclass
class Call:
    id: str
    agent_id: str
    customer_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    outcome: Optional[str] = None
    overall_sentiment: Optional[str] = None
    summary: Optional[str] = None
    recording_url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_document(cls, doc):
        return cls(
            id=doc["id"],
            agent_id=doc.get("agent_id"),
            customer_id=doc.get("customer_id"),
            start_time=doc.get("start_time"),
            end_time=doc.get("end_time"),
            duration_seconds=doc.get("duration_seconds"),
            outcome=doc.get("outcome"),
            overall_sentiment=doc.get("overall_sentiment"),
            summary=doc.get("summary"),
            recording_url=doc.get("recording_url"),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "agentId": self.agent_id,
            "customerId": self.customer_id,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "durationSeconds": self.duration_seconds,
            "outcome": self.outcome,
            "overallSentiment": self.overall_sentiment,
            "summary": self.summary,
            "recordingUrl": self.recording_url,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class ConversationalTurn:
    id: str
    call_id: str
    turn_number: int
    speaker: str
    transcript: str
    confidence: float
    timestamp_offset: int
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_document(cls, doc):
        return cls(
            id=doc["id"],
            call_id=doc["call_id"],
            turn_number=doc["turn_number"],
            speaker=doc.get("speaker", "customer"),
            transcript=doc.get("transcript", ""),
            confidence=doc.get("confidence", 0.0),
            timestamp_offset=doc.get("timestamp_offset", 0),
            created_at=doc.get("created_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "callId": self.call_id,
            "turnNumber": self.turn_number,
            "speaker": self.speaker,
            "transcript": self.transcript,
            "confidence": self.confidence,
            "timestampOffset": self.timestamp_offset,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class EmotionalMetric:
    id: str
    call_id: str
    timestamp_offset: int
    anger: float
    frustration: float
    satisfaction: float
    neutral: float
    confidence: float
    turn_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_document(cls, doc):
        return cls(
            id=doc["id"],
            call_id=doc["call_id"],
            timestamp_offset=doc.get("timestamp_offset", 0),
            anger=doc.get("anger", 0.0),
            frustration=doc.get("frustration", 0.0),
            satisfaction=doc.get("satisfaction", 0.0),
            neutral=doc.get("neutral", 0.0),
            confidence=doc.get("confidence", 0.0),
            turn_id=doc.get("turn_id"),
            created_at=doc.get("created_at"),
        )

    def to_scores(self):
        return EmotionScores(
            anger=self.anger,
            frustration=self.frustration,
            satisfaction=self.satisfaction,
            neutral=self.neutral,
            confidence=self.confidence,
            timestamp=self.timestamp_offset,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "callId": self.call_id,
            "turnId": self.turn_id,
            "timestampOffset": self.timestamp_offset,
            "anger": self.anger,
            "frustration": self.frustration,
            "satisfaction": self.satisfaction,
            "neutral": self.neutral,
            "confidence": self.confidence,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class Suggestion:
    id: str
    call_id: str
    priority: str
    text: str
    reasoning: str
    timestamp_offset: int
    kind: str = "contextual"
    historical_success_rate: Optional[float] = None
    similar_case_ids: List[str] = field(default_factory=list)
    was_followed: Optional[bool] = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_document(cls, doc):
        return cls(
            id=doc["id"],
            call_id=doc["call_id"],
            priority=doc.get("priority", "low"),
            text=doc.get("text", ""),
            reasoning=doc.get("reasoning", ""),
            timestamp_offset=doc.get("timestamp_offset", 0),
            kind=doc.get("kind", "contextual"),
            historical_success_rate=doc.get("historical_success_rate"),
            similar_case_ids=list(doc.get("similar_case_ids") or []),
            was_followed=doc.get("was_followed"),
            created_at=doc.get("created_at"),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "callId": self.call_id,
            "priority": self.priority,
            "kind": self.kind,
            "text": self.text,
            "reasoning": self.reasoning,
            "timestampOffset": self.timestamp_offset,
            "historicalSuccessRate": self.historical_success_rate,
            "similarCaseIds": self.similar_case_ids,
            "wasFollowed": self.was_followed,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class IncrementalUpdate:
    """What one processed chunk contributes to the live view."""
    transcript: str
    emotions: EmotionScores
    context: Optional[ConversationContext] = None
    suggestions: List[Suggestion] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls):
        return cls(
            transcript="",
            emotions=EmotionScores(anger=0, frustration=0, satisfaction=0, neutral=0, confidence=0, timestamp=0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "transcript": self.transcript,
            "emotions": self.emotions.to_dict(),
            "context": self.context.to_dict() if self.context else None,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "degraded": list(self.degraded),
        }
