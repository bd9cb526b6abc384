import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[2]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


TRANSCRIPTION_PROVIDER = str(os.getenv("TRANSCRIPTION_PROVIDER") or "deepgram").strip().lower()
DEEPGRAM_API_KEY = str(os.getenv("DEEPGRAM_API_KEY") or "").strip()
ASSEMBLYAI_API_KEY = str(os.getenv("ASSEMBLYAI_API_KEY") or "").strip()
DEEPGRAM_MODEL = str(os.getenv("DEEPGRAM_MODEL") or "nova-2").strip()
DEEPGRAM_LANGUAGE = str(os.getenv("DEEPGRAM_LANGUAGE") or "en-US").strip()
DEEPGRAM_DIARIZE = _env_flag("DEEPGRAM_DIARIZE", "true")

AUDIO_TARGET_SAMPLE_RATE = 16000
AUDIO_BUFFER_THRESHOLD_BYTES = max(2, int(os.getenv("AUDIO_BUFFER_THRESHOLD_BYTES", "4096")))

RECONNECT_BASE_DELAY_SEC = max(0.0, float(os.getenv("RECONNECT_BASE_DELAY_SEC", "1.0")))
RECONNECT_MAX_DELAY_SEC = max(0.0, float(os.getenv("RECONNECT_MAX_DELAY_SEC", "30")))
MAX_RECONNECT_ATTEMPTS = max(0, int(os.getenv("MAX_RECONNECT_ATTEMPTS", "5")))
KEEPALIVE_INTERVAL_SEC = max(0.1, float(os.getenv("KEEPALIVE_INTERVAL_SEC", "8")))
PROVIDER_IDLE_TIMEOUT_SEC = max(0.2, float(os.getenv("PROVIDER_IDLE_TIMEOUT_SEC", "10")))
LATENCY_WARN_MS = max(1.0, float(os.getenv("LATENCY_WARN_MS", "300")))
SEND_QUEUE_MAX_FRAMES = max(1, int(os.getenv("SEND_QUEUE_MAX_FRAMES", "64")))

# Interim results currently move the per-connection speaker pointer as well.
SPEAKER_STATE_FROM_INTERIM = _env_flag("SPEAKER_STATE_FROM_INTERIM", "true")

CORRECTION_STORE = str(os.getenv("CORRECTION_STORE") or "memory").strip().lower()
TRANSCRIPT_STORE = str(os.getenv("TRANSCRIPT_STORE") or "memory").strip().lower()
SUPABASE_URL = str(os.getenv("SUPABASE_URL") or "").strip()
SUPABASE_KEY = str(os.getenv("SUPABASE_KEY") or "").strip()

FRAGMENT_BUS_ENABLED = _env_flag("FRAGMENT_BUS_ENABLED")
REDIS_URL = str(os.getenv("REDIS_URL") or "").strip()
INSTANCE_ID = str(os.getenv("INSTANCE_ID") or "").strip()


@dataclass(frozen=True)
class AdapterSettings:
    reconnect_base_delay_sec: float = RECONNECT_BASE_DELAY_SEC
    reconnect_max_delay_sec: float = RECONNECT_MAX_DELAY_SEC
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    keepalive_interval_sec: float = KEEPALIVE_INTERVAL_SEC
    provider_idle_timeout_sec: float = PROVIDER_IDLE_TIMEOUT_SEC
    latency_warn_ms: float = LATENCY_WARN_MS
    send_queue_max_frames: int = SEND_QUEUE_MAX_FRAMES

    def __post_init__(self) -> None:
        if self.keepalive_interval_sec >= self.provider_idle_timeout_sec:
            raise ValueError(
                "keepalive_interval_sec must be shorter than provider_idle_timeout_sec "
                f"({self.keepalive_interval_sec} >= {self.provider_idle_timeout_sec})"
            )
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")
        if self.send_queue_max_frames < 1:
            raise ValueError("send_queue_max_frames must be >= 1")
