import threading
import time
from typing import Any


_lock = threading.Lock()
_metrics: dict[str, float] = {
    "conversations_active": 0.0,
    "conversations_started": 0.0,
    "audio_frames_received": 0.0,
    "audio_frames_sent": 0.0,
    "audio_frames_dropped": 0.0,
    "audio_frames_rejected": 0.0,
    "provider_messages_skipped": 0.0,
    "reconnect_attempts": 0.0,
    "terminal_failures": 0.0,
    "fragments_emitted": 0.0,
    "speaker_segments_emitted": 0.0,
    "speaker_transitions_emitted": 0.0,
    "speaker_batch_write_failures": 0.0,
    "corrections_applied": 0.0,
    "correction_usage_write_failures": 0.0,
    "latency_total_ms": 0.0,
    "latency_samples": 0.0,
}


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def get_metric(name: str) -> float:
    with _lock:
        return float(_metrics.get(str(name or "").strip(), 0.0))


def observe_latency_ms(value_ms: float) -> None:
    latency = max(0.0, float(value_ms or 0.0))
    with _lock:
        _metrics["latency_total_ms"] = float(_metrics.get("latency_total_ms", 0.0)) + latency
        _metrics["latency_samples"] = float(_metrics.get("latency_samples", 0.0)) + 1.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    latency_samples = max(1.0, float(data.get("latency_samples") or 0.0))

    payload: dict[str, Any] = {
        "generated_at": time.time(),
        "latency_total_ms": float(data.get("latency_total_ms") or 0.0),
        "latency_samples": int(data.get("latency_samples") or 0.0),
        "avg_latency_ms": round(float(data.get("latency_total_ms") or 0.0) / latency_samples, 2),
    }
    for key, value in data.items():
        if key in payload or key == "latency_total_ms":
            continue
        payload[key] = int(value)

    if extra:
        payload.update(extra)
    return payload
