import json
import shutil
import subprocess

import numpy as np
import pytest
import soundfile as sf

import lmp.audio.probe as probe_mod
from lmp.audio.probe import parse_ffprobe_output, probe_format
from lmp.audio.types import ProbeResult

DEFAULTS = ProbeResult()


def _ffprobe_json(**overrides):
    payload = {
        "streams": [
            {"codec_type": "video", "width": 600},
            {"codec_type": "audio", "sample_rate": "48000", "channels": 1, "duration": "11.0"},
        ],
        "format": {"duration": "12.345"},
    }
    payload.update(overrides)
    return json.dumps(payload)


def _write_wav(path, seconds=0.5, samplerate=8000, channels=1):
    frames = int(seconds * samplerate)
    data = np.zeros((frames, channels), dtype="float32")
    sf.write(path, data, samplerate)
    return path


def test_parse_picks_first_audio_stream_and_format_duration():
    result = parse_ffprobe_output(_ffprobe_json(), DEFAULTS)

    assert result == ProbeResult(sample_rate=48000, channels=1, duration_seconds=12.345)
    assert result.duration_known


def test_parse_uses_stream_duration_when_format_lacks_one():
    result = parse_ffprobe_output(_ffprobe_json(format={}), DEFAULTS)

    assert result.duration_seconds == 11.0


def test_parse_missing_fields_fall_back_one_by_one():
    raw = json.dumps({"streams": [{"codec_type": "audio", "channels": 6}]})

    result = parse_ffprobe_output(raw, DEFAULTS)

    assert result.sample_rate == 44100
    assert result.channels == 6
    assert result.duration_seconds is None
    assert not result.duration_known


@pytest.mark.parametrize("raw", ["", "not json", "[1, 2]", json.dumps({"format": {"duration": "nan"}})])
def test_parse_garbage_gives_defaults(raw):
    assert parse_ffprobe_output(raw, DEFAULTS) == DEFAULTS


def test_parse_rejects_negative_and_zero_values():
    raw = json.dumps(
        {
            "streams": [{"codec_type": "audio", "sample_rate": "0", "channels": -2}],
            "format": {"duration": "-1"},
        }
    )

    assert parse_ffprobe_output(raw, DEFAULTS) == DEFAULTS


def test_zero_duration_is_unknown():
    zero = parse_ffprobe_output(json.dumps({"format": {"duration": "0"}}), DEFAULTS)
    stream_zero = parse_ffprobe_output(
        json.dumps({"streams": [{"codec_type": "audio", "duration": "0.000"}], "format": {}}),
        DEFAULTS,
    )

    assert zero.duration_seconds is None
    assert not zero.duration_known
    assert not stream_zero.duration_known


def test_probe_timeout_falls_back_to_defaults(monkeypatch, tmp_path):
    target = tmp_path / "song.opus"
    target.write_bytes(b"\x00" * 16)

    def _hang(*args, **kwargs):
        raise subprocess.TimeoutExpired(cmd=args[0], timeout=kwargs.get("timeout"))

    monkeypatch.setattr(probe_mod.subprocess, "run", _hang)

    assert probe_format(target, ffprobe="ffprobe", timeout=0.1) == DEFAULTS


def test_probe_missing_binary_and_file_gives_defaults(tmp_path):
    result = probe_format(tmp_path / "missing.mp3", ffprobe=str(tmp_path / "no-ffprobe"))

    assert result == DEFAULTS


def test_probe_custom_defaults(tmp_path):
    defaults = ProbeResult(sample_rate=48000, channels=1)

    result = probe_format(tmp_path / "missing.mp3", ffprobe=str(tmp_path / "no-ffprobe"), defaults=defaults)

    assert result == defaults


def test_probe_falls_back_to_mutagen(monkeypatch, tmp_path):
    wav = _write_wav(tmp_path / "tone.wav", seconds=0.5, samplerate=8000, channels=2)
    monkeypatch.setattr(probe_mod.shutil, "which", lambda name: None)

    result = probe_format(wav)

    assert result.sample_rate == 8000
    assert result.channels == 2
    assert result.duration_seconds == pytest.approx(0.5, abs=0.01)


def test_probe_failed_ffprobe_exit_uses_mutagen(monkeypatch, tmp_path):
    wav = _write_wav(tmp_path / "tone.wav", seconds=1.0, samplerate=16000)

    def _fail(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 1, stdout=b"", stderr=b"")

    monkeypatch.setattr(probe_mod.subprocess, "run", _fail)

    result = probe_format(wav, ffprobe="ffprobe")

    assert result.sample_rate == 16000
    assert result.channels == 1


@pytest.mark.skipif(shutil.which("ffprobe") is None, reason="ffprobe not installed")
def test_probe_real_file_with_ffprobe(tmp_path):
    wav = _write_wav(tmp_path / "tone.wav", seconds=1.0, samplerate=22050, channels=2)

    result = probe_format(wav)

    assert result.sample_rate == 22050
    assert result.channels == 2
    assert result.duration_seconds == pytest.approx(1.0, abs=0.05)


def test_zero_length_from_mutagen_is_unknown(monkeypatch, tmp_path):
    class _Info:
        length = 0.0
        sample_rate = 32000
        channels = 1

    class _Audio:
        info = _Info()

    monkeypatch.setattr(probe_mod.shutil, "which", lambda name: None)
    monkeypatch.setattr(probe_mod, "MutagenFile", lambda path: _Audio())

    result = probe_format(tmp_path / "empty.ogg")

    assert result.sample_rate == 32000
    assert result.duration_seconds is None
