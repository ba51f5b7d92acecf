from __future__ import annotations

"""
Behavioral and voice telemetry summaries for the risk prompt.

Design intent:
- Render prosody as one compact line the model can read at a glance.
- Flag cross-modal disagreement (e.g. "I'm fine" spoken with flat affect) explicitly.
"""

from dataclasses import dataclass

_POSITIVE_MARKERS = (
    "fine",
    "good",
    "okay",
    "great",
    "not bad",
    "alright",
    "better",
    "well",
    "doing okay",
    "i'm okay",
    "i'm fine",
    "i'm good",
    "no complaints",
    "can't complain",
)


@dataclass(frozen=True)
class VoiceTelemetry:
    words_per_minute: float = 0.0
    pause_count: int | None = None
    average_pause_sec: float | None = None
    mean_pitch_hz: float | None = None
    pitch_variability: float | None = None
    mean_energy_db: float | None = None
    energy_variability: float | None = None
    speech_percentage: float | None = None
    snr_db: float | None = None
    speech_rate: float | None = None


def format_voice_features(voice: VoiceTelemetry | None, *, wpm: float | None = None) -> str:
    rate = int(wpm if wpm is not None else (voice.words_per_minute if voice else 0.0))
    if voice is None:
        return f"WPM={rate}, No prosodic data"

    parts = [f"WPM={rate}"]
    if voice.pause_count is not None:
        avg = f"{voice.average_pause_sec:.1f}s" if voice.average_pause_sec is not None else "N/A"
        parts.append(f"Pauses={voice.pause_count} (avg {avg})")
    if voice.mean_pitch_hz is not None:
        var = f"{voice.pitch_variability:.1f}" if voice.pitch_variability is not None else "N/A"
        parts.append(f"Pitch={voice.mean_pitch_hz:.0f}Hz (var={var})")
    if voice.mean_energy_db is not None:
        var = f"{voice.energy_variability:.1f}" if voice.energy_variability is not None else "N/A"
        parts.append(f"Energy={voice.mean_energy_db:.0f}dB (var={var})")
    if voice.speech_percentage is not None:
        parts.append(f"Speech%={voice.speech_percentage:.0f}%")
    if voice.snr_db is not None:
        parts.append(f"SNR={voice.snr_db:.0f}dB")
    return ", ".join(parts)


def detect_signal_discrepancy(
    transcript: str,
    voice: VoiceTelemetry | None,
    behavioral_report: str,
) -> str | None:
    if voice is None:
        return None
    findings: list[str] = []
    lowered = str(transcript or "").lower()
    report = str(behavioral_report or "")

    if any(marker in lowered for marker in _POSITIVE_MARKERS):
        pitch_var = voice.pitch_variability if voice.pitch_variability is not None else 100.0
        energy = voice.mean_energy_db if voice.mean_energy_db is not None else 0.0
        energy_var = voice.energy_variability if voice.energy_variability is not None else 100.0
        if pitch_var < 15.0 or (energy < -30.0 and energy_var < 5.0):
            findings.append(
                "MASKING: Positive verbal content with flat vocal prosody "
                f"(pitch var: {voice.pitch_variability or 0.0:.1f}, energy: {voice.mean_energy_db or 0.0:.0f}dB)"
            )

    slow_speech = (voice.speech_rate if voice.speech_rate is not None else 100.0) < 1.5
    if slow_speech and ("Progressive head droop" in report or "decompensation" in report):
        findings.append("CONCORDANT DECOMPENSATION: Low speech rate with progressive postural decline")

    if (voice.pause_count or 0) > 6 and "avoidance" in report.lower():
        findings.append(
            f"AVOIDANCE PATTERN: Gaze avoidance with frequent speech hesitations ({voice.pause_count} pauses)"
        )
    return "; ".join(findings) if findings else None
