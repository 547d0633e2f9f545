"""
Chunk-by-chunk analysis of live calls, whole-recording analysis for uploads,
and session close-out.
"""

import random
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from call_operations import MAX_TRACKED_CALLS, cleanup_call_resources
from context_analyzer import ConversationAnalyzer
from emotion import HumeEmotionScorer, TextEmotionScorer, neutral_emotions, randomized_default_emotions
from errors import StorageError, VendorError
from llm import create_llm_client
from models import IncrementalUpdate, TranscriptionResult, as_utc
from suggestions import SuggestionEngine
from summary import SummaryGenerator, average_emotions
from transcription import GroqTranscriber

LIVE_AGENT_ID = "live-agent"
LIVE_CUSTOMER_ID = "live-customer"
UPLOAD_AGENT_ID = "demo-agent"
UPLOAD_CUSTOMER_ID = "demo-customer"

LOW_CONFIDENCE_THRESHOLD = 0.7


def flag_low_confidence(turns, threshold=LOW_CONFIDENCE_THRESHOLD):
    """Turns whose transcription confidence is below the threshold."""
    return [turn for turn in turns if turn.confidence < threshold]


def derive_sentiment(averages, metric_count):
    """Overall call sentiment from the average emotion vector."""
    if metric_count == 0:
        return "neutral"
    if averages.anger >= 50 or averages.frustration >= 50 or averages.satisfaction < 30:
        return "negative"
    if averages.satisfaction >= 60:
        return "positive"
    return "neutral"


class PipelineCoordinator:
    """Runs transcription, emotion scoring, context analysis and suggestions for a call."""

    def __init__(self, store, transcriber, text_emotion_scorer, context_analyzer, suggestion_engine,
                 audio_emotion_scorer=None, summary_generator=None, min_chunk_bytes=1000,
                 emotion_failure_policy="degrade", rng=None, max_tracked_calls=MAX_TRACKED_CALLS):
        self.store = store
        self.transcriber = transcriber
        self.text_emotion_scorer = text_emotion_scorer
        self.context_analyzer = context_analyzer
        self.suggestion_engine = suggestion_engine
        self.audio_emotion_scorer = audio_emotion_scorer
        self.summary_generator = summary_generator
        self.min_chunk_bytes = min_chunk_bytes
        self.emotion_failure_policy = emotion_failure_policy
        self.rng = rng or random.Random()

        # Last vector per call; the oldest entry is dropped past max_tracked_calls
        self._last_emotions = OrderedDict()
        self.max_tracked_calls = max_tracked_calls
        self._last_emotions_lock = threading.Lock()

    # =============================================================================
    # EMOTION FALLBACKS
    # =============================================================================

    def _remember_emotions(self, call_id, emotions):
        with self._last_emotions_lock:
            self._last_emotions[call_id] = emotions
            self._last_emotions.move_to_end(call_id)
            while len(self._last_emotions) > self.max_tracked_calls:
                self._last_emotions.popitem(last=False)

    def _fallback_emotions(self, call_id):
        """Last vector scored for this call, else a randomized calm default."""
        with self._last_emotions_lock:
            last = self._last_emotions.get(call_id)
        if last is not None:
            return last
        return randomized_default_emotions(self.rng)

    def _score_text_emotions(self, call_id, transcript, degraded):
        try:
            emotions = self.text_emotion_scorer.score(transcript)
        except VendorError as e:
            print(f"[PIPELINE] Emotion scoring failed for call {call_id}: {e}")
            if self.emotion_failure_policy == "fail":
                raise
            degraded.append("emotion")
            return self._fallback_emotions(call_id)
        self._remember_emotions(call_id, emotions)
        return emotions

    def _transcribe(self, audio_chunk, filename):
        try:
            return self.transcriber.transcribe(audio_chunk, filename=filename or "audio.wav")
        except Exception as e:
            print(f"[PIPELINE] Transcription failed: {e}")
            return TranscriptionResult.empty(error=str(e))

    # =============================================================================
    # LIVE CHUNKS
    # =============================================================================

    def process_chunk(self, call_id, audio_chunk, filename=None) -> IncrementalUpdate:
        """
        Analyze one captured chunk of a live call.

        Vendor failures degrade the affected stage and are listed in the
        update's `degraded`. Storage failures are logged per write and never
        fail the chunk.
        """
        if len(audio_chunk) < self.min_chunk_bytes:
            print(f"[PIPELINE] Audio too small ({len(audio_chunk)} bytes), skipping")
            return IncrementalUpdate.empty()

        print(f"[PIPELINE] Processing chunk for call {call_id} ({len(audio_chunk)} bytes)")
        degraded = []

        try:
            self.store.calls.get_or_create(call_id, agent_id=LIVE_AGENT_ID, customer_id=LIVE_CUSTOMER_ID)
        except StorageError as e:
            print(f"[DB ERROR] Could not ensure call {call_id} exists: {e}")

        transcription = self._transcribe(audio_chunk, filename)
        transcript = transcription.full_transcript

        context = None
        if transcript:
            emotions = self._score_text_emotions(call_id, transcript, degraded)
            try:
                context = self.context_analyzer.analyze(transcript)
            except VendorError as e:
                print(f"[PIPELINE] Context analysis failed for call {call_id}: {e}")
                degraded.append("context")
        else:
            if transcription.error:
                degraded.append("transcription")
            emotions = self._fallback_emotions(call_id)

        suggestions = []
        if transcript:
            suggestions = self.suggestion_engine.generate(call_id, emotions, context, transcript)

        self._store_turns(call_id, transcription.segments)
        self._store_metric(call_id, emotions, int(time.time()))
        self._store_suggestions(suggestions)

        return IncrementalUpdate(
            transcript=transcript,
            emotions=emotions,
            context=context,
            suggestions=suggestions,
            degraded=degraded,
        )

    def _store_turns(self, call_id, segments, numbers=None):
        if not segments:
            return []
        try:
            if numbers is None:
                numbers = self.store.turns.next_turn_numbers(call_id, len(segments))
        except StorageError as e:
            print(f"[DB ERROR] Failed to allocate turn numbers for call {call_id}: {e}")
            return []

        stored = []
        for number, segment in zip(numbers, segments):
            try:
                stored.append(self.store.turns.create(
                    call_id=call_id,
                    turn_number=number,
                    speaker=segment.speaker,
                    transcript=segment.text,
                    confidence=segment.confidence,
                    timestamp_offset=int(segment.timestamp_offset * 1000),
                ))
            except StorageError as e:
                print(f"[DB ERROR] Failed to store turn {number} for call {call_id}: {e}")
        return stored

    def _store_metric(self, call_id, emotions, timestamp_offset):
        try:
            return self.store.metrics.create(call_id, emotions, timestamp_offset)
        except StorageError as e:
            print(f"[DB ERROR] Failed to store emotions for call {call_id}: {e}")
            return None

    def _store_suggestions(self, suggestions):
        for suggestion in suggestions:
            try:
                self.store.suggestions.create(suggestion)
            except StorageError as e:
                print(f"[DB ERROR] Failed to store suggestion {suggestion.id}: {e}")

    # =============================================================================
    # UPLOADED RECORDINGS
    # =============================================================================

    def _score_audio_emotions(self, audio, filename):
        if self.audio_emotion_scorer is None:
            return neutral_emotions()
        return self.audio_emotion_scorer.score_audio(audio, filename=filename or "audio.wav")

    def analyze_recording(self, audio, filename=None):
        """
        Analyze a complete recording as a new call.

        Unlike live chunks, a context analysis failure fails the whole request.
        """
        call = self.store.calls.create(agent_id=UPLOAD_AGENT_ID, customer_id=UPLOAD_CUSTOMER_ID)
        print(f"[PIPELINE] Analyzing uploaded recording as call {call.id} ({len(audio)} bytes)")
        degraded = []

        with ThreadPoolExecutor(max_workers=2) as executor:
            transcription_future = executor.submit(self._transcribe, audio, filename)
            emotion_future = executor.submit(self._score_audio_emotions, audio, filename)
            transcription = transcription_future.result()
            try:
                emotions = emotion_future.result()
            except VendorError as e:
                print(f"[PIPELINE] Audio emotion scoring failed for call {call.id}: {e}")
                if self.emotion_failure_policy == "fail":
                    raise
                degraded.append("emotion")
                emotions = neutral_emotions()

        if transcription.error:
            degraded.append("transcription")

        self._store_turns(call.id, transcription.segments,
                          numbers=self._upload_turn_numbers(call.id, len(transcription.segments)))
        self._store_metric(call.id, emotions, 0)

        context = self.context_analyzer.analyze(transcription.full_transcript)

        turns = self.store.turns.get_by_call_id(call.id)
        metrics = self.store.metrics.get_by_call_id(call.id)
        summary = self.summary_generator.generate(call, turns, metrics)

        suggestions = self.suggestion_engine.generate(call.id, emotions, context, transcription.full_transcript)
        self._store_suggestions(suggestions)

        end_time = datetime.now(timezone.utc)
        self.store.calls.update(
            call.id,
            end_time=end_time,
            duration_seconds=int((end_time - as_utc(call.start_time)).total_seconds()),
            overall_sentiment=context.sentiment,
            summary=summary.get("overview"),
        )

        return {
            "success": True,
            "callId": call.id,
            "transcript": transcription.full_transcript,
            "emotions": emotions.to_dict(),
            "context": context.to_dict(),
            "summary": summary,
            "suggestions": [s.to_dict() for s in suggestions],
            "degraded": degraded,
        }

    def _upload_turn_numbers(self, call_id, count):
        # A fresh call: reserve 1..n from the same sequence live turns use
        try:
            return self.store.turns.next_turn_numbers(call_id, count)
        except StorageError as e:
            print(f"[DB ERROR] Failed to allocate turn numbers for call {call_id}: {e}")
            return range(1, count + 1)

    # =============================================================================
    # SESSION END AND DETAILS
    # =============================================================================

    def end_session(self, call_id, outcome=None):
        """Close a live call. Returns the updated Call, or None if it does not exist."""
        call = self.store.calls.get_by_id(call_id)
        if call is None:
            return None

        end_time = datetime.now(timezone.utc)
        turns = self.store.turns.get_by_call_id(call_id)
        metrics = self.store.metrics.get_by_call_id(call_id)
        averages = average_emotions(metrics)

        call.end_time = end_time
        call.duration_seconds = max(0, int((end_time - as_utc(call.start_time)).total_seconds()))
        call.overall_sentiment = derive_sentiment(averages, len(metrics))
        if outcome:
            call.outcome = outcome

        fields = {
            "end_time": call.end_time,
            "duration_seconds": call.duration_seconds,
            "overall_sentiment": call.overall_sentiment,
        }
        if outcome:
            fields["outcome"] = outcome
        if self.summary_generator is not None and turns:
            fields["summary"] = self.summary_generator.generate(call, turns, metrics).get("overview")

        updated = self.store.calls.update(call_id, **fields)

        with self._last_emotions_lock:
            self._last_emotions.pop(call_id, None)
        cleanup_call_resources(call_id)

        print(f"[PIPELINE] Call {call_id} ended: {call.duration_seconds}s, sentiment {call.overall_sentiment}")
        return updated

    def get_call_details(self, call_id):
        call = self.store.calls.get_by_id(call_id)
        if call is None:
            return None
        turns = self.store.turns.get_by_call_id(call_id)
        metrics = self.store.metrics.get_by_call_id(call_id)
        suggestions = self.store.suggestions.get_by_call_id(call_id)
        averages = average_emotions(metrics)
        return {
            "call": call.to_dict(),
            "turns": [t.to_dict() for t in turns],
            "emotions": [m.to_dict() for m in metrics],
            "averageEmotions": {
                "anger": round(averages.anger),
                "frustration": round(averages.frustration),
                "satisfaction": round(averages.satisfaction),
                "neutral": round(averages.neutral),
            },
            "lowConfidenceTurns": [t.id for t in flag_low_confidence(turns)],
            "suggestions": [s.to_dict() for s in suggestions],
        }


def build_coordinator(settings, store):
    """Construct the vendor adapters from settings and wire them into a coordinator."""
    llm = create_llm_client(settings)
    return PipelineCoordinator(
        store=store,
        transcriber=GroqTranscriber(api_key=settings.groq_api_key, model=settings.whisper_model),
        text_emotion_scorer=TextEmotionScorer(llm),
        context_analyzer=ConversationAnalyzer(llm),
        suggestion_engine=SuggestionEngine(llm),
        audio_emotion_scorer=HumeEmotionScorer(
            settings.hume_api_key,
            max_attempts=settings.hume_max_attempts,
            poll_interval=settings.hume_poll_interval,
        ),
        summary_generator=SummaryGenerator(llm),
        min_chunk_bytes=settings.min_chunk_bytes,
        emotion_failure_policy=settings.emotion_failure_policy,
    )
