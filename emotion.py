import json
import random
import time

import requests

from errors import MalformedVendorResponse, VendorError
from models import EmotionScores

HUME_BATCH_URL = "https://api.hume.ai/v0/batch/jobs"

# Hume prosody emotion name -> our axis
HUME_EMOTION_MAP = {
    "Anger": "anger",
    "Annoyance": "frustration",
    "Joy": "satisfaction",
    "Calmness": "neutral",
}

TEXT_EMOTION_CONFIDENCE = 0.85


def neutral_emotions():
    return EmotionScores(anger=0, frustration=0, satisfaction=50, neutral=50, confidence=0.5)


def zero_emotions():
    return EmotionScores(anger=0, frustration=0, satisfaction=0, neutral=0, confidence=0)


def randomized_default_emotions(rng=None):
    """Plausible calm-customer vector used when no real score is available."""
    rng = rng or random
    return EmotionScores(
        anger=rng.random() * 20,
        frustration=rng.random() * 30,
        satisfaction=50 + rng.random() * 30,
        neutral=40 + rng.random() * 20,
        confidence=0.8,
    )


def _number(data, key, default):
    value = data.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class TextEmotionScorer:
    """Scores the emotional tone of a transcript with one LLM prompt."""

    PROMPT = '''Analyze the emotional tone of this speech and return ONLY a JSON object with emotion percentages (0-100):

Speech: "{text}"

Return format:
{{"anger": 0-100, "frustration": 0-100, "satisfaction": 0-100, "neutral": 0-100}}

Only JSON, no explanation.'''

    def __init__(self, llm):
        self.llm = llm

    def score(self, text) -> EmotionScores:
        # VendorError / MalformedVendorResponse propagate to the caller's policy
        data = self.llm.complete_json(self.PROMPT.format(text=text))
        if not isinstance(data, dict):
            raise MalformedVendorResponse("Emotion response is not a JSON object")
        return EmotionScores(
            anger=_number(data, "anger", 0),
            frustration=_number(data, "frustration", 0),
            satisfaction=_number(data, "satisfaction", 50),
            neutral=_number(data, "neutral", 50),
            confidence=TEXT_EMOTION_CONFIDENCE,
        )


class HumeEmotionScorer:
    """Prosody emotion scoring through Hume's batch job API."""

    def __init__(self, api_key, max_attempts=30, poll_interval=1.0, session=None, base_url=HUME_BATCH_URL,
                 sleep=time.sleep):
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep

    @property
    def _headers(self):
        if not self.api_key:
            raise VendorError("HUME_AI_API_KEY is not set")
        return {"X-Hume-Api-Key": self.api_key, "accept": "application/json"}

    def score_audio(self, audio_bytes, filename="audio.wav") -> EmotionScores:
        job_id = self._create_job(audio_bytes, filename)
        predictions = self._poll_job(job_id)
        if predictions is None:
            print(f"[API WARNING] Hume job {job_id} timed out, returning neutral emotions")
            return neutral_emotions()
        return self.parse_predictions(predictions)

    @staticmethod
    def _json_object(response, what):
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedVendorResponse(f"Hume {what} response is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedVendorResponse(f"Hume {what} response is not a JSON object: {data!r}")
        return data

    def _create_job(self, audio_bytes, filename):
        print(f"[API REQUEST] Submitting Hume prosody job ({len(audio_bytes)} bytes)")
        try:
            response = self.session.post(
                self.base_url,
                headers=self._headers,
                data={"json": json.dumps({"models": {"prosody": {}}})},
                files={"file": (filename, audio_bytes, "audio/wav")},
                timeout=30
            )
        except requests.RequestException as e:
            raise VendorError(f"Hume API request failed: {e}") from e
        if response.status_code not in (200, 201):
            raise VendorError(f"Hume API error: {response.status_code} - {response.text}")
        job_id = self._json_object(response, "job").get("job_id")
        if not job_id:
            raise VendorError("Hume API did not return a job_id")
        print(f"[API RESPONSE] Hume job created: {job_id}")
        return job_id

    def _poll_job(self, job_id):
        """Poll until the job completes; None when attempts run out."""
        for attempt in range(self.max_attempts):
            try:
                response = self.session.get(f"{self.base_url}/{job_id}", headers=self._headers, timeout=30)
            except requests.RequestException as e:
                raise VendorError(f"Failed to get job status: {e}") from e
            if response.status_code != 200:
                raise VendorError(f"Failed to get job status: {response.status_code}")

            data = self._json_object(response, "job status")
            state = data.get("state")
            status = state.get("status") if isinstance(state, dict) else state

            if status == "COMPLETED":
                return self._fetch_predictions(job_id)
            if status == "FAILED":
                raise VendorError(f"Emotion analysis job {job_id} failed")

            if attempt < self.max_attempts - 1:
                self._sleep(self.poll_interval)
        return None

    def _fetch_predictions(self, job_id):
        try:
            response = self.session.get(f"{self.base_url}/{job_id}/predictions", headers=self._headers, timeout=30)
        except requests.RequestException as e:
            raise VendorError(f"Failed to fetch predictions: {e}") from e
        if response.status_code != 200:
            raise VendorError(f"Failed to fetch predictions: {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return []

    @staticmethod
    def _first_prediction(predictions):
        if not predictions or not isinstance(predictions, list) or not isinstance(predictions[0], dict):
            return None
        results = predictions[0].get("results")
        if not isinstance(results, dict):
            return None
        entries = results.get("predictions")
        if not entries or not isinstance(entries, list) or not isinstance(entries[0], dict):
            return None
        first = entries[0]
        if "emotions" in first:
            return first
        # Full batch payload: results.predictions[].models.prosody.grouped_predictions[].predictions[]
        models = first.get("models")
        prosody = models.get("prosody") if isinstance(models, dict) else None
        groups = prosody.get("grouped_predictions") if isinstance(prosody, dict) else None
        for group in groups if isinstance(groups, list) else []:
            if not isinstance(group, dict):
                continue
            for prediction in group.get("predictions") or []:
                if isinstance(prediction, dict) and prediction.get("emotions"):
                    return prediction
        return None

    @classmethod
    def parse_predictions(cls, predictions) -> EmotionScores:
        """Missing or malformed predictions map to the neutral vector."""
        prediction = cls._first_prediction(predictions)
        if not prediction or not isinstance(prediction.get("emotions"), list):
            return neutral_emotions()

        values = {axis: 0.0 for axis in HUME_EMOTION_MAP.values()}
        for emotion in prediction["emotions"]:
            if not isinstance(emotion, dict):
                continue
            axis = HUME_EMOTION_MAP.get(emotion.get("name"))
            if not axis:
                continue
            try:
                values[axis] = float(emotion.get("score", 0) or 0) * 100
            except (TypeError, ValueError):
                print(f"[API WARNING] Ignoring non-numeric Hume score for {emotion.get('name')}")
        return EmotionScores(confidence=prediction.get("confidence") or 0.8, **values)
