import io
import threading
import time
import wave
from contextlib import contextmanager

import numpy as np
import pytest
from pydub import AudioSegment

from capture import (
    AudioSource,
    ChunkCapturer,
    FileAudioSource,
    LiveMonitorClient,
    LiveSession,
    MixedDeviceSource,
    mix_pcm16,
    to_mono_int16,
    user_message,
)
from errors import CaptureError


def test_mix_pads_and_clips():
    mixed = mix_pcm16(np.array([30000, 100, -30000], dtype=np.int16), np.array([10000], dtype=np.int16))

    assert mixed.dtype == np.int16
    assert mixed.tolist() == [32767, 100, -30000]


def test_to_mono_uses_left_channel_of_float_block():
    block = np.array([[0.5, -1.0], [-2.0, 1.0]], dtype=np.float32)

    assert to_mono_int16(block).tolist() == [16383, -32767]


def test_mixed_source_combines_both_streams():
    source = MixedDeviceSource(mic_device=0, system_device=1, sample_rate=8000)
    source._callback("mic")(np.full((4, 1), 1000, dtype=np.int16), 4, None, None)
    source._callback("system")(np.full((2, 1), 500, dtype=np.int16), 2, None, None)

    segment = source.read_available()

    samples = np.frombuffer(segment.raw_data, dtype=np.int16).tolist()
    assert samples == [1500, 1500, 1000, 1000]
    assert segment.frame_rate == 8000
    assert source.read_available() is None


def test_file_source_replays_windows():
    source = FileAudioSource(AudioSegment.silent(duration=12000, frame_rate=16000), window_seconds=5)

    with source.open():
        lengths = []
        while not source.exhausted:
            lengths.append(len(source.read_available()))

    assert lengths == [5000, 5000, 2000]


def test_file_source_missing_file_raises_capture_error(tmp_path):
    source = FileAudioSource(str(tmp_path / "missing.wav"))

    with pytest.raises(CaptureError):
        with source.open():
            pass


def test_emit_once_submits_wav_bytes():
    received = []
    source = FileAudioSource(AudioSegment.silent(duration=2000, frame_rate=16000), window_seconds=1)
    capturer = ChunkCapturer(source, received.append, window_seconds=60)

    capturer.start()
    try:
        sent = capturer.emit_once()
        for future in capturer.futures:
            future.result()
    finally:
        capturer.stop()

    assert received == [sent]
    with wave.open(io.BytesIO(sent)) as wav_file:
        assert wav_file.getframerate() == 16000
        assert wav_file.getnframes() == 16000


class BrokenSource(AudioSource):
    def read_available(self):
        raise OSError("device unplugged")


class DeniedSource(AudioSource):
    @contextmanager
    def open(self):
        raise CaptureError("Microphone permission denied")
        yield self


def test_capture_error_is_reported_not_raised():
    errors = []
    capturer = ChunkCapturer(BrokenSource(), lambda chunk: None, window_seconds=60, on_error=errors.append)

    capturer.start()
    assert capturer.emit_once() is None
    capturer.stop()

    assert errors == ["Failed: Capture failed: device unplugged"]
    assert isinstance(capturer.error, CaptureError)
    assert not capturer.running


def test_start_failure_reports_user_message():
    errors = []
    capturer = ChunkCapturer(DeniedSource(), lambda chunk: None, on_error=errors.append)

    with pytest.raises(CaptureError):
        capturer.start()

    assert errors == ["Permission denied! Please allow microphone and system audio access."]
    assert not capturer.running


def test_capturer_can_be_restarted_after_stop():
    received = []
    source = FileAudioSource(AudioSegment.silent(duration=2000, frame_rate=16000), window_seconds=1)
    capturer = ChunkCapturer(source, received.append, window_seconds=60)

    capturer.start()
    capturer.stop()
    capturer.start()
    try:
        sent = capturer.emit_once()
        for future in capturer.futures:
            future.result()
    finally:
        capturer.stop()

    assert sent is not None
    assert received == [sent]
    assert capturer.error is None


def test_emit_before_start_is_reported():
    errors = []
    source = FileAudioSource(AudioSegment.silent(duration=2000, frame_rate=16000), window_seconds=1)
    capturer = ChunkCapturer(source, lambda chunk: None, on_error=errors.append)

    with source.open():
        assert capturer.emit_once() is None

    assert isinstance(capturer.error, CaptureError)
    assert len(errors) == 1


class TickingSource(AudioSource):
    """Always has 100 ms of silence buffered; records when its devices are open."""

    def __init__(self):
        self.reads = 0
        self.is_open = False

    @contextmanager
    def open(self):
        self.is_open = True
        try:
            yield self
        finally:
            self.is_open = False

    def read_available(self):
        self.reads += 1
        return AudioSegment.silent(duration=100, frame_rate=16000)


def test_timer_emits_until_stopped_and_releases_source():
    source = TickingSource()
    capturer = ChunkCapturer(source, lambda chunk: None, window_seconds=0.05)

    capturer.start()
    assert source.is_open
    time.sleep(0.4)
    capturer.stop()
    emitted = len(capturer.futures)
    time.sleep(0.15)

    assert emitted >= 2
    assert len(capturer.futures) == emitted
    assert not source.is_open
    assert not capturer.running
    assert capturer._timer is None


def test_timer_keeps_emitting_while_earlier_chunks_are_in_flight():
    release = threading.Event()
    started = []

    def slow_upload(chunk):
        started.append(len(chunk))
        release.wait(5)
        return len(chunk)

    source = FileAudioSource(AudioSegment.silent(duration=3000, frame_rate=16000), window_seconds=1)
    capturer = ChunkCapturer(source, slow_upload, window_seconds=0.05)

    capturer.start()
    try:
        capturer.wait(timeout=5)
        assert len(capturer.futures) == 3
        assert not any(future.done() for future in capturer.futures)
    finally:
        capturer.stop()
        release.set()

    assert [future.result(timeout=5) for future in capturer.futures] == started
    assert len(started) == 3


def test_user_message_for_unsupported_backend():
    assert user_message(CaptureError("Audio capture is not supported on this system: no PortAudio")) == \
        "Audio capture is not supported on this system."


def make_update(anger=10.4, transcript="hello", suggestions=()):
    return {
        "success": True,
        "transcript": transcript,
        "emotions": {"anger": anger, "frustration": 20.5, "satisfaction": 60.49, "neutral": 40, "confidence": 0.85},
        "context": None,
        "suggestions": list(suggestions),
    }


def test_session_rounds_and_caps_emotion_history():
    session = LiveSession("call-1")
    for i in range(25):
        session.apply(make_update(anger=i))

    snapshot = session.snapshot()
    assert len(snapshot["emotionHistory"]) == 20
    assert snapshot["emotionHistory"][0]["anger"] == 5
    assert snapshot["emotions"] == {"anger": 24, "frustration": 21, "satisfaction": 60, "neutral": 40}
    assert len(snapshot["transcript"]) == 25


def test_session_keeps_latest_five_suggestions_newest_first():
    session = LiveSession("call-1")
    for i in range(4):
        session.apply(make_update(suggestions=[
            {"text": f"tip {i}a", "reasoning": "r", "priority": "high"},
            {"text": f"tip {i}b", "reasoning": "r", "priority": "medium"},
        ]))

    texts = [s["suggestion_text"] for s in session.snapshot()["suggestions"]]
    assert texts == ["tip 3a", "tip 3b", "tip 2a", "tip 2b", "tip 1a"]


def test_session_ignores_empty_transcript():
    session = LiveSession()
    session.apply(make_update(transcript=""))

    assert session.snapshot()["transcript"] == []
    assert len(session.call_id) == 36


class FakeHTTPResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class FakeHTTPSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.responses.pop(0)


def test_client_posts_chunk_and_applies_response():
    http = FakeHTTPSession(FakeHTTPResponse(200, make_update(transcript="I need help")))
    client = LiveMonitorClient("http://server:5000/", session=http, live_session=LiveSession("call-9"))

    result = client.send_chunk(b"RIFF....")

    url, kwargs = http.requests[0]
    assert url == "http://server:5000/api/live"
    assert kwargs["data"] == {"callId": "call-9"}
    assert kwargs["files"]["audio"][1] == b"RIFF...."
    assert result["transcript"] == "I need help"
    assert client.live_session.snapshot()["transcript"] == ["I need help"]


def test_client_logs_and_skips_failed_chunk():
    http = FakeHTTPSession(FakeHTTPResponse(500, text='{"error": "Failed to process audio"}'))
    client = LiveMonitorClient(session=http, live_session=LiveSession("call-9"))

    assert client.send_chunk(b"RIFF") is None
    assert client.live_session.snapshot()["transcript"] == []


def test_client_end_session_sends_outcome():
    http = FakeHTTPSession(FakeHTTPResponse(200, {"success": True, "call": {"id": "call-9", "outcome": "churn"}}))
    client = LiveMonitorClient(session=http, live_session=LiveSession("call-9"))

    call = client.end_session("churn")

    assert call["outcome"] == "churn"
    assert http.requests[0][0].endswith("/api/live/end")
    assert http.requests[0][1]["json"] == {"callId": "call-9", "outcome": "churn"}
