import math
from io import BytesIO

from groq import Groq

from models import TranscriptSegment, TranscriptionResult

DEFAULT_SEGMENT_CONFIDENCE = 0.9


def _field(item, name, default=None):
    """Read a field from either an SDK object or a plain dict."""
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def segment_confidence(avg_logprob):
    if avg_logprob is None:
        return DEFAULT_SEGMENT_CONFIDENCE
    try:
        return max(0.0, min(1.0, math.exp(float(avg_logprob))))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_SEGMENT_CONFIDENCE


class GroqTranscriber:
    """Speech-to-text through Groq's hosted Whisper models."""

    def __init__(self, api_key=None, model="whisper-large-v3", language="en", client=None):
        self.client = client if client is not None else Groq(api_key=api_key)
        self.model = model
        self.language = language

    def transcribe(self, audio_bytes, filename="audio.wav") -> TranscriptionResult:
        """
        Transcribe one audio blob.

        Returns a result with one segment per Whisper segment. Any vendor
        failure yields an empty result whose `error` is set; nothing is raised.
        """
        if not audio_bytes:
            return TranscriptionResult.empty()

        # The API expects a file-like object with a name attribute
        audio_file = BytesIO(audio_bytes)
        audio_file.name = filename or "audio.wav"

        try:
            print(f"[API REQUEST] Calling Groq Whisper API for transcription ({len(audio_bytes)} bytes)")
            response = self.client.audio.transcriptions.create(
                model=self.model,
                file=audio_file,
                language=self.language,
                response_format="verbose_json"
            )
            print("[API RESPONSE] Groq Whisper transcription completed")
        except Exception as e:
            error_message = str(e)
            if "rate_limit" in error_message.lower() or "429" in error_message:
                print(f"[API ERROR] Groq API Rate Limit: {error_message}")
            else:
                print(f"[API ERROR] Groq API error: {error_message}")
            return TranscriptionResult.empty(error=error_message)

        return self._parse(response)

    def _parse(self, response) -> TranscriptionResult:
        text = (_field(response, "text", "") or "").strip()
        segments = []
        for raw in _field(response, "segments", None) or []:
            segment_text = (_field(raw, "text", "") or "").strip()
            if not segment_text:
                continue
            segments.append(TranscriptSegment(
                text=segment_text,
                confidence=segment_confidence(_field(raw, "avg_logprob")),
                speaker="customer",
                timestamp_offset=float(_field(raw, "start", 0) or 0),
                is_final=True,
            ))

        # No segment breakdown: one segment for the whole text
        if not segments and text:
            segments.append(TranscriptSegment(text=text))

        if not text:
            text = " ".join(s.text for s in segments)

        return TranscriptionResult(segments=segments, full_transcript=text)
