import copy
import random

import mongomock
import pytest

from call_operations import CallOperations
from db_config import MongoDB
from errors import VendorError
from models import EmotionScores, ConversationContext, TranscriptSegment, TranscriptionResult
from pipeline import PipelineCoordinator
from suggestions import SuggestionEngine
from summary import SummaryGenerator


class FakeLLM:
    """complete_json() returns the queued responses in order; an exception in the queue is raised."""

    def __init__(self, *responses, default=None):
        self.responses = list(responses)
        self.default = default
        self.prompts = []

    def complete_json(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise VendorError("no response configured")
        return copy.deepcopy(response)


class FakeTranscriber:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def transcribe(self, audio_bytes, filename="audio.wav"):
        self.calls.append((len(audio_bytes), filename))
        if self.error is not None:
            return TranscriptionResult.empty(error=str(self.error))
        return self.result or TranscriptionResult.empty()


class FakeEmotionScorer:
    def __init__(self, scores=None, error=None):
        self.scores = scores
        self.error = error
        self.calls = []

    def score(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.scores

    def score_audio(self, audio_bytes, filename="audio.wav"):
        self.calls.append(len(audio_bytes))
        if self.error is not None:
            raise self.error
        return self.scores


class FakeContextAnalyzer:
    def __init__(self, context=None, error=None):
        self.context = context
        self.error = error
        self.calls = []

    def analyze(self, transcript):
        self.calls.append(transcript)
        if self.error is not None:
            raise self.error
        return self.context


def make_transcription(*texts, confidence=0.95):
    segments = [
        TranscriptSegment(text=text, confidence=confidence, speaker="customer", timestamp_offset=i * 2.5)
        for i, text in enumerate(texts)
    ]
    return TranscriptionResult(segments=segments, full_transcript=" ".join(texts))


@pytest.fixture
def db():
    return MongoDB(client=mongomock.MongoClient(), db_name="call_monitor_test")


@pytest.fixture
def store(db):
    return CallOperations(db)


@pytest.fixture
def calm_emotions():
    return EmotionScores(anger=10, frustration=15, satisfaction=70, neutral=50, confidence=0.85)


@pytest.fixture
def stable_context():
    return ConversationContext(
        trajectory="stable",
        topics=["billing"],
        intent="Customer asks about an invoice",
        sentiment="neutral",
        urgency=20,
    )


@pytest.fixture
def make_coordinator(store, calm_emotions, stable_context):
    """Build a coordinator over mongomock storage; any collaborator can be overridden."""

    def factory(**overrides):
        summary_llm = FakeLLM(default={"overview": "Customer asked about billing and was helped."})
        parts = {
            "store": store,
            "transcriber": FakeTranscriber(make_transcription("I have a question about my bill.")),
            "text_emotion_scorer": FakeEmotionScorer(calm_emotions),
            "context_analyzer": FakeContextAnalyzer(stable_context),
            "suggestion_engine": SuggestionEngine(FakeLLM()),
            "audio_emotion_scorer": FakeEmotionScorer(calm_emotions),
            "summary_generator": SummaryGenerator(summary_llm),
            "min_chunk_bytes": 1000,
            "emotion_failure_policy": "degrade",
            "rng": random.Random(7),
        }
        parts.update(overrides)
        return PipelineCoordinator(**parts)

    return factory
