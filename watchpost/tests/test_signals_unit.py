from watchpost.risk.signals import VoiceTelemetry, detect_signal_discrepancy, format_voice_features


def test_voice_summary_without_prosody() -> None:
    assert format_voice_features(None, wpm=92.4) == "WPM=92, No prosodic data"


def test_voice_summary_with_features() -> None:
    voice = VoiceTelemetry(
        words_per_minute=110,
        pause_count=4,
        average_pause_sec=0.8,
        mean_pitch_hz=142,
        pitch_variability=21.3,
        mean_energy_db=-34,
        energy_variability=6.2,
        speech_percentage=61,
        snr_db=18,
    )
    assert format_voice_features(voice) == (
        "WPM=110, Pauses=4 (avg 0.8s), Pitch=142Hz (var=21.3), Energy=-34dB (var=6.2), Speech%=61%, SNR=18dB"
    )


def test_masking_detected_for_positive_words_with_flat_pitch() -> None:
    voice = VoiceTelemetry(pitch_variability=9.0, mean_energy_db=-20)
    finding = detect_signal_discrepancy("I'm fine, really.", voice, "")
    assert finding is not None and finding.startswith("MASKING")


def test_avoidance_and_decompensation_patterns() -> None:
    voice = VoiceTelemetry(pause_count=9, speech_rate=1.1)
    report = "Progressive head droop observed. Gaze avoidance during answers."
    finding = detect_signal_discrepancy("", voice, report)
    assert finding is not None
    assert "CONCORDANT DECOMPENSATION" in finding
    assert "AVOIDANCE PATTERN" in finding
    assert detect_signal_discrepancy("fine", None, report) is None
