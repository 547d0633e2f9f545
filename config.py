import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        print(f"[CONFIG WARNING] {name} is not an integer, using {default}")
        return default


def _env_float(name, default):
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        print(f"[CONFIG WARNING] {name} is not a number, using {default}")
        return default


@dataclass
class Settings:
    """Application configuration read from the environment (.env supported)."""

    groq_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    hume_api_key: Optional[str] = None

    llm_provider: str = "gemini"
    gemini_model: str = "gemini-2.5-flash"
    groq_llm_model: str = "llama-3.3-70b-versatile"
    whisper_model: str = "whisper-large-v3"

    mongodb_uri: Optional[str] = None
    mongodb_host: str = "localhost"
    mongodb_port: int = 27017
    mongodb_db_name: str = "call_monitor"

    min_chunk_bytes: int = 1000
    emotion_failure_policy: str = "degrade"
    hume_max_attempts: int = 30
    hume_poll_interval: float = 1.0

    chunk_seconds: int = 5
    server_url: str = "http://localhost:5000"

    @classmethod
    def from_env(cls):
        return cls(
            groq_api_key=os.getenv("GROQ_API_KEY"),
            gemini_api_key=os.getenv("GOOGLE_GEMINI_API_KEY"),
            hume_api_key=os.getenv("HUME_AI_API_KEY"),
            llm_provider=os.getenv("LLM_PROVIDER", "gemini").strip().lower(),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            groq_llm_model=os.getenv("GROQ_LLM_MODEL", "llama-3.3-70b-versatile"),
            whisper_model=os.getenv("WHISPER_MODEL", "whisper-large-v3"),
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_host=os.getenv("MONGODB_HOST", "localhost"),
            mongodb_port=_env_int("MONGODB_PORT", 27017),
            mongodb_db_name=os.getenv("MONGODB_DB_NAME", "call_monitor"),
            min_chunk_bytes=_env_int("MIN_CHUNK_BYTES", 1000),
            emotion_failure_policy=os.getenv("EMOTION_FAILURE_POLICY", "degrade").strip().lower(),
            hume_max_attempts=_env_int("HUME_MAX_ATTEMPTS", 30),
            hume_poll_interval=_env_float("HUME_POLL_INTERVAL", 1.0),
            chunk_seconds=_env_int("CHUNK_SECONDS", 5),
            server_url=os.getenv("SERVER_URL", "http://localhost:5000"),
        )

    def validate(self):
        """Return a list of missing or invalid settings."""
        problems = []
        if not self.groq_api_key:
            problems.append("GROQ_API_KEY (required for transcription)")
        if self.llm_provider == "gemini" and not self.gemini_api_key:
            problems.append("GOOGLE_GEMINI_API_KEY (required when LLM_PROVIDER=gemini)")
        if self.llm_provider not in ("gemini", "groq"):
            problems.append(f"LLM_PROVIDER must be 'gemini' or 'groq', got '{self.llm_provider}'")
        if self.emotion_failure_policy not in ("degrade", "fail"):
            problems.append(
                f"EMOTION_FAILURE_POLICY must be 'degrade' or 'fail', got '{self.emotion_failure_policy}'"
            )
        return problems
