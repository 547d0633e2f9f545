#!/usr/bin/env python3
"""
Live call capture client.

This script:
1. Captures system audio (the other party) and the microphone (the agent),
   or replays a recording file for demos
2. Mixes both into one mono stream and cuts it into fixed windows
3. Sends every window to POST /api/live without waiting for earlier ones
4. Keeps the running transcript, emotion history and latest suggestions
5. Closes the call with POST /api/live/end when capture stops

Usage:
    python capture.py --server_url http://localhost:5000 --audio_file path/to/call.wav [--chunk_duration 5]
    python capture.py --server_url http://localhost:5000 --mic_device 1 --system_device 3 [--outcome successful]
"""

import argparse
import math
import sys
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack, contextmanager
from io import BytesIO

import numpy as np
import requests
from pydub import AudioSegment
from pydub.utils import make_chunks

from config import Settings
from errors import CaptureError
from models import CALL_OUTCOMES

EMOTION_HISTORY_SIZE = 20
SUGGESTIONS_SHOWN = 5


def round_half_up(value):
    return int(math.floor(float(value) + 0.5))


def to_mono_int16(indata):
    """
    Convert a sounddevice callback block into mono int16 samples.
    Uses the left channel only (avoids phase cancellation in stereo system audio).
    """
    x = np.asarray(indata)
    if x.ndim == 2 and x.shape[1] >= 1:
        mono = x[:, 0]
    else:
        mono = x.reshape(-1)

    if mono.dtype == np.int16:
        return mono.copy()
    f = np.clip(mono.astype(np.float32), -1.0, 1.0)
    return (f * 32767.0).astype(np.int16)


def mix_pcm16(first, second):
    """Sample-wise sum of two int16 signals, shorter one zero-padded, clipped to int16."""
    first = np.asarray(first, dtype=np.int16)
    second = np.asarray(second, dtype=np.int16)
    length = max(len(first), len(second))
    mixed = np.zeros(length, dtype=np.int32)
    mixed[:len(first)] += first
    mixed[:len(second)] += second
    return np.clip(mixed, -32768, 32767).astype(np.int16)


def segment_to_wav_bytes(audio_segment):
    buffer = BytesIO()
    audio_segment.export(buffer, format="wav")
    return buffer.getvalue()


# =============================================================================
# AUDIO SOURCES
# =============================================================================

class AudioSource:
    """Something that yields the audio captured since the last read."""

    exhausted = False

    @contextmanager
    def open(self):
        yield self

    def read_available(self):
        """Return an AudioSegment with everything buffered since the last call, or None."""
        raise NotImplementedError


class MixedDeviceSource(AudioSource):
    """System audio and microphone captured as two input streams and mixed to mono."""

    def __init__(self, mic_device=None, system_device=None, sample_rate=16000, blocksize=1024):
        self.mic_device = mic_device
        self.system_device = system_device
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._buffers = {"mic": [], "system": []}
        self._lock = threading.Lock()

    def _callback(self, name):
        def audio_cb(indata, frames, time_info, status):
            if status:
                print(f"[CAPTURE] {name} stream status: {status}")
            samples = to_mono_int16(indata)
            with self._lock:
                self._buffers[name].append(samples)
        return audio_cb

    @contextmanager
    def open(self):
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise CaptureError(f"Audio capture is not supported on this system: {e}") from e

        devices = [("mic", self.mic_device)]
        if self.system_device is not None:
            devices.append(("system", self.system_device))

        with ExitStack() as stack:
            for name, device in devices:
                try:
                    stream = sd.InputStream(
                        device=device,
                        samplerate=self.sample_rate,
                        channels=1,
                        dtype="int16",
                        blocksize=self.blocksize,
                        callback=self._callback(name),
                    )
                    stack.enter_context(stream)
                except (sd.PortAudioError, ValueError) as e:
                    raise CaptureError(f"Could not open {name} device {device!r}: {e}") from e
                print(f"[CAPTURE] Opened {name} input (device={device}, {self.sample_rate} Hz)")
            yield self
        print("[CAPTURE] Input streams closed")

    def read_available(self):
        with self._lock:
            mic = self._buffers["mic"]
            system = self._buffers["system"]
            self._buffers = {"mic": [], "system": []}

        if not mic and not system:
            return None
        mic_samples = np.concatenate(mic) if mic else np.zeros(0, dtype=np.int16)
        system_samples = np.concatenate(system) if system else np.zeros(0, dtype=np.int16)
        mixed = mix_pcm16(mic_samples, system_samples)

        return AudioSegment(
            data=mixed.tobytes(),
            sample_width=2,
            frame_rate=self.sample_rate,
            channels=1
        )


class FileAudioSource(AudioSource):
    """Replays a recording one window at a time."""

    def __init__(self, audio, window_seconds=5):
        self.audio = audio
        self.window_ms = int(window_seconds * 1000)
        self._chunks = deque()

    @property
    def exhausted(self):
        return not self._chunks

    @contextmanager
    def open(self):
        audio = self.audio
        if not isinstance(audio, AudioSegment):
            try:
                print(f"[LOAD] Loading audio file: {audio}")
                audio = AudioSegment.from_file(audio)
            except (FileNotFoundError, OSError) as e:
                raise CaptureError(f"Could not load audio file {self.audio}: {e}") from e
        print(f"[LOAD] Audio loaded: {len(audio) / 1000:.2f}s, {audio.frame_rate} Hz, {audio.channels} channel(s)")
        self._chunks = deque(make_chunks(audio, self.window_ms))
        try:
            yield self
        finally:
            self._chunks.clear()

    def read_available(self):
        if not self._chunks:
            return None
        return self._chunks.popleft()


# =============================================================================
# CHUNK CAPTURER
# =============================================================================

class ChunkCapturer:
    """
    Emits the captured audio as WAV bytes every `window_seconds`.

    Chunks are handed to `on_chunk` on a thread pool without waiting for
    earlier chunks to finish. Capture errors stop the capturer and are
    reported through `on_error` instead of being raised from the timer thread.
    """

    def __init__(self, source, on_chunk, window_seconds=5, on_error=None, max_workers=4):
        self.source = source
        self.on_chunk = on_chunk
        self.window_seconds = window_seconds
        self.on_error = on_error
        self.max_workers = max_workers
        self.executor = None
        self.futures = []
        self.error = None

        self._stack = None
        self._stop_event = threading.Event()
        self._timer = None
        self._state_lock = threading.Lock()

    @property
    def running(self):
        return self._stack is not None and not self._stop_event.is_set()

    def start(self):
        with self._state_lock:
            if self._stack is not None:
                return
            stack = ExitStack()
            try:
                stack.enter_context(self.source.open())
            except CaptureError as e:
                stack.close()
                self._report(e)
                raise
            self._stack = stack
            self.error = None
            self.executor = ThreadPoolExecutor(max_workers=self.max_workers)
            self._stop_event.clear()
            self._timer = threading.Thread(target=self._run, name="chunk-capturer", daemon=True)
            self._timer.start()
        print(f"[CAPTURE] Capture started ({self.window_seconds}s windows)")

    def _run(self):
        while not self._stop_event.wait(self.window_seconds):
            self.emit_once()
            if self.source.exhausted:
                print("[CAPTURE] Source exhausted")
                self._stop_event.set()
                break

    def emit_once(self):
        """Slice whatever is buffered and submit it. Returns the WAV bytes sent, or None."""
        try:
            segment = self.source.read_available()
            if segment is None or len(segment) == 0:
                return None
            wav_bytes = segment_to_wav_bytes(segment)
        except Exception as e:
            self._report(e if isinstance(e, CaptureError) else CaptureError(f"Capture failed: {e}"))
            self._stop_event.set()
            return None

        executor = self.executor
        if executor is None:
            self._report(CaptureError("Capture failed: capturer is not started"))
            return None
        try:
            self.futures.append(executor.submit(self.on_chunk, wav_bytes))
        except RuntimeError as e:
            self._report(CaptureError(f"Capture failed: {e}"))
            self._stop_event.set()
            return None
        return wav_bytes

    def _report(self, error):
        self.error = error
        print(f"[CAPTURE ERROR] {error}")
        if self.on_error:
            self.on_error(user_message(error))

    def wait(self, timeout=None):
        """Block until capture ends on its own (source exhausted or error)."""
        self._stop_event.wait(timeout)

    def stop(self):
        """Stop emitting and release the devices. In-flight submissions keep running."""
        self._stop_event.set()
        timer = self._timer
        if timer is not None and timer is not threading.current_thread():
            timer.join()
        with self._state_lock:
            if self._stack is not None:
                self._stack.close()
                self._stack = None
            self._timer = None
            executor, self.executor = self.executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        print("[CAPTURE] Capture stopped")


def user_message(error):
    text = str(error)
    lowered = text.lower()
    if "permission" in lowered or "denied" in lowered:
        return "Permission denied! Please allow microphone and system audio access."
    if "not supported" in lowered:
        return "Audio capture is not supported on this system."
    return f"Failed: {text}"


# =============================================================================
# CLIENT SESSION
# =============================================================================

class LiveSession:
    """In-memory view of one monitored call, fed by /api/live responses."""

    def __init__(self, call_id=None):
        self.call_id = call_id or str(uuid.uuid4())
        self.transcript = []
        self.emotions = None
        self.emotion_history = deque(maxlen=EMOTION_HISTORY_SIZE)
        self.suggestions = []
        self.context = None
        self._lock = threading.Lock()

    def apply(self, data):
        """Merge one chunk response; late responses after stop are merged too."""
        with self._lock:
            emotions = data.get("emotions")
            if emotions:
                current = {
                    "anger": round_half_up(emotions.get("anger", 0)),
                    "frustration": round_half_up(emotions.get("frustration", 0)),
                    "satisfaction": round_half_up(emotions.get("satisfaction", 0)),
                    "neutral": round_half_up(emotions.get("neutral", 0)),
                }
                self.emotions = current
                self.emotion_history.append(dict(current, timestamp=int(time.time() * 1000)))

            if data.get("transcript"):
                self.transcript.append(data["transcript"])

            if data.get("context"):
                self.context = data["context"]

            incoming = [
                {
                    "suggestion_text": s.get("text"),
                    "trigger_reason": s.get("reasoning"),
                    "priority": s.get("priority"),
                }
                for s in data.get("suggestions") or []
            ]
            if incoming:
                self.suggestions = (incoming + self.suggestions)[:SUGGESTIONS_SHOWN]

    def snapshot(self):
        with self._lock:
            return {
                "callId": self.call_id,
                "transcript": list(self.transcript),
                "emotions": self.emotions,
                "emotionHistory": list(self.emotion_history),
                "suggestions": list(self.suggestions),
                "context": self.context,
            }


class LiveMonitorClient:
    """Posts chunks to the analysis backend and feeds the responses into a LiveSession."""

    def __init__(self, server_url="http://localhost:5000", session=None, live_session=None, timeout=60):
        self.server_url = server_url.rstrip('/')
        self.session = session or requests.Session()
        self.live_session = live_session or LiveSession()
        self.timeout = timeout
        self.chunks_sent = 0
        self._count_lock = threading.Lock()

    def send_chunk(self, wav_bytes):
        with self._count_lock:
            self.chunks_sent += 1
            chunk_index = self.chunks_sent
        call_id = self.live_session.call_id
        url = f"{self.server_url}/api/live"

        try:
            print(f"[SEND] Sending chunk {chunk_index} ({len(wav_bytes)} bytes) for call {call_id}")
            start_time = time.time()
            response = self.session.post(
                url,
                files={'audio': (f'chunk_{chunk_index}.wav', wav_bytes, 'audio/wav')},
                data={'callId': call_id},
                timeout=self.timeout
            )
            request_time = time.time() - start_time

            if response.status_code == 200:
                result = response.json()
                print(f"[SUCCESS] Chunk {chunk_index} processed in {request_time:.2f}s")
                if result.get("transcript"):
                    print(f"[RESULT] - Transcript: {result['transcript']}")
                if result.get("degraded"):
                    print(f"[RESULT] - Degraded: {', '.join(result['degraded'])}")
                for suggestion in result.get("suggestions") or []:
                    print(f"[RESULT] - [{suggestion.get('priority', '').upper()}] {suggestion.get('text')}")
                self.live_session.apply(result)
                return result

            print(f"[ERROR] Chunk {chunk_index} failed with status {response.status_code}")
            print(f"[ERROR] Response: {response.text}")
            return None

        except requests.exceptions.Timeout:
            print(f"[ERROR] Chunk {chunk_index} timed out after {self.timeout} seconds")
            return None
        except requests.exceptions.ConnectionError:
            print(f"[ERROR] Failed to connect to server at {self.server_url}")
            return None
        except ValueError as e:
            print(f"[ERROR] Chunk {chunk_index} returned invalid JSON: {e}")
            return None

    def end_session(self, outcome=None):
        data = {'callId': self.live_session.call_id}
        if outcome:
            data['outcome'] = outcome
        try:
            response = self.session.post(f"{self.server_url}/api/live/end", json=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            print(f"[ERROR] Failed to end call {self.live_session.call_id}: {e}")
            return None
        if response.status_code != 200:
            print(f"[ERROR] Ending call failed with status {response.status_code}: {response.text}")
            return None
        call = response.json().get("call")
        print(f"[API] Call {self.live_session.call_id} closed")
        return call


def _device(value):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


def main():
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="Capture a call and stream it to the analysis backend")
    parser.add_argument("--server_url", default=settings.server_url, help="Analysis backend URL")
    parser.add_argument("--audio_file", help="Replay this recording instead of capturing devices")
    parser.add_argument("--chunk_duration", type=float, default=settings.chunk_seconds, help="Window length in seconds")
    parser.add_argument("--mic_device", help="Microphone input device (index or name)")
    parser.add_argument("--system_device", help="System audio / loopback input device (index or name)")
    parser.add_argument("--call_id", help="Use this call id instead of a generated one")
    parser.add_argument("--outcome", choices=CALL_OUTCOMES,
                        help="Outcome recorded when the call ends")
    args = parser.parse_args()

    if args.audio_file:
        source = FileAudioSource(args.audio_file, window_seconds=args.chunk_duration)
    else:
        source = MixedDeviceSource(mic_device=_device(args.mic_device), system_device=_device(args.system_device))

    client = LiveMonitorClient(args.server_url, live_session=LiveSession(args.call_id))
    capturer = ChunkCapturer(
        source,
        client.send_chunk,
        window_seconds=args.chunk_duration,
        on_error=lambda message: print(f"[ERROR] {message}")
    )

    print(f"[CAPTURE] Monitoring call {client.live_session.call_id} via {args.server_url}")
    try:
        capturer.start()
    except CaptureError:
        return 1

    try:
        capturer.wait()
    except KeyboardInterrupt:
        print("\n[CAPTURE] Interrupted by user")
    finally:
        capturer.stop()

    # Let in-flight chunks land before closing the call
    for future in capturer.futures:
        future.result()

    client.end_session(args.outcome)
    snapshot = client.live_session.snapshot()
    print(f"[SUMMARY] Chunks sent: {client.chunks_sent}")
    print(f"[SUMMARY] Transcript lines: {len(snapshot['transcript'])}")
    if snapshot["emotions"]:
        print(f"[SUMMARY] Last emotions: {snapshot['emotions']}")
    return 1 if capturer.error else 0


if __name__ == "__main__":
    sys.exit(main())
