import pytest

import lmp.app as app
from lmp.audio.errors import DecoderLaunchError
from lmp.audio.types import AudioDevice, EndReason


class FakeEngine:
    outcome = EndReason.NATURAL
    fail_start = False
    instances: list = []

    def __init__(self, settings):
        self.settings = settings
        self.callback = None
        self.played = []
        self.seeks = []
        self.closed = False
        self.duration_known = True
        self.total_seconds = 10.0
        self.position_seconds = 0.0
        FakeEngine.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def set_track_ended_callback(self, callback):
        self.callback = callback

    def play(self, path):
        if FakeEngine.fail_start:
            raise DecoderLaunchError("ffmpeg executable not found")
        self.played.append(path)
        self.callback(FakeEngine.outcome)

    def seek_to(self, seconds):
        self.seeks.append(seconds)

    def stop(self):
        pass

    def list_devices(self):
        return [AudioDevice(id=3, name="HDMI", is_default=True, max_output_channels=8, default_samplerate=48000.0)]


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LMP_CONFIG_PATH", str(tmp_path / "settings.yaml"))
    monkeypatch.delenv("LMP_NULL_OUTPUT", raising=False)
    FakeEngine.instances = []
    FakeEngine.outcome = EndReason.NATURAL
    FakeEngine.fail_start = False
    monkeypatch.setattr(app, "AudioEngine", FakeEngine)


def test_missing_path_is_usage_error():
    assert app.main(["--quiet"]) == 2


def test_natural_end_exits_zero():
    assert app.main(["song.mp3", "--quiet", "--volume", "0.5", "--start", "3"]) == 0

    engine = FakeEngine.instances[0]
    assert engine.played == ["song.mp3"]
    assert engine.seeks == [3.0]
    assert engine.settings.get_volume() == 0.5
    assert engine.closed


def test_start_failure_exits_one(capsys):
    FakeEngine.fail_start = True

    assert app.main(["song.mp3", "--quiet"]) == 1
    assert "ffmpeg executable not found" in capsys.readouterr().err


def test_failed_playback_exits_one():
    FakeEngine.outcome = EndReason.DECODE_FAILED

    assert app.main(["broken.mp3", "--quiet"]) == 1


def test_cli_options_reach_settings():
    app.main(["song.mp3", "--quiet", "--decoder", "soundfile", "--device", "2", "--speed", "9"])

    settings = FakeEngine.instances[0].settings
    assert settings.get_decoder_backend() == "soundfile"
    assert settings.get_output_device() == 2
    assert settings.get_speed() == 3.0


def test_null_output_flag_sets_environment(monkeypatch):
    monkeypatch.setenv("LMP_NULL_OUTPUT", "0")
    app.main(["song.mp3", "--quiet", "--null-output"])

    assert app.os.environ["LMP_NULL_OUTPUT"] == "1"


def test_list_devices_goes_through_engine(capsys):
    assert app.main(["--list-devices"]) == 0

    out = capsys.readouterr().out
    assert "HDMI" in out
    assert out.startswith("*")
    assert FakeEngine.instances[0].closed
