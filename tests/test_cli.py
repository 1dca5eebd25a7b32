"""
Unit tests for the command-line interface (devices mocked).
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from live_interpreter import cli
from live_interpreter.config import Config
from live_interpreter.errors import DeviceError
from live_interpreter.languages import Language

DEVICES = [
    {"index": 0, "name": "USB Mic", "max_input_channels": 1, "max_output_channels": 0,
     "default_samplerate": 48000.0, "hostapi": "ALSA"},
    {"index": 1, "name": "Speakers", "max_input_channels": 0, "max_output_channels": 2,
     "default_samplerate": 48000.0, "hostapi": "ALSA"},
]


def run_args(**overrides):
    args = dict(lang_a=None, lang_b=None, split_audio=False, mic_device=None,
                output_device=None, ptt_key=None, api_key=None, log_level=None)
    args.update(overrides)
    return SimpleNamespace(**args)


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_list_languages(capsys):
    assert cli.main(["list-languages"]) == 0
    out = capsys.readouterr().out
    assert "Italian" in out and "it-IT" in out


def test_list_devices(capsys):
    with patch('live_interpreter.cli.list_audio_devices', return_value=DEVICES), \
            patch('live_interpreter.cli.default_device_indices', return_value=(DEVICES[0]['index'], None)):
        assert cli.main(["list-devices"]) == 0
    out = capsys.readouterr().out
    assert "USB Mic" in out
    assert "*in" in out


def test_list_devices_without_backend(capsys):
    error = DeviceError("Audio backend unavailable: install PortAudio and sounddevice")
    with patch('live_interpreter.cli.list_audio_devices', side_effect=error):
        assert cli.main(["list-devices"]) == 1


def test_self_test(monkeypatch, capsys):
    monkeypatch.setenv("GEMINI_API_KEY", "AIzaSySELFTESTKEY")
    monkeypatch.setattr(cli, "REQUIRED_PACKAGES", [("numpy", "NumPy"), ("pydantic", "Pydantic")])
    with patch('live_interpreter.cli.list_audio_devices', return_value=DEVICES):
        assert cli.main(["self-test"]) == 0
    out = capsys.readouterr().out
    assert "PASSED" in out
    assert "SELFTESTKEY" not in out


def test_self_test_fails_without_key(monkeypatch):
    monkeypatch.setattr(cli, "REQUIRED_PACKAGES", [])
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
    with patch('live_interpreter.cli.list_audio_devices', return_value=DEVICES):
        assert cli.main(["self-test"]) == 1


def test_self_test_reports_missing_package(monkeypatch, capsys):
    monkeypatch.setenv("GEMINI_API_KEY", "key")
    monkeypatch.setattr(cli, "REQUIRED_PACKAGES", [("no_such_module_xyz", "Missing")])
    with patch('live_interpreter.cli.list_audio_devices', return_value=DEVICES):
        assert cli.main(["self-test"]) == 1
    assert "Missing" in capsys.readouterr().out


def test_apply_overrides():
    config = cli.apply_overrides(
        Config(),
        run_args(lang_a="es", lang_b="German", split_audio=True, ptt_key="F9", log_level="DEBUG"),
    )

    assert config.session.language_a is Language.SPANISH
    assert config.session.language_b is Language.GERMAN
    assert config.session.split_audio
    assert config.ptt.enabled and config.ptt.ptt_key == "F9"
    assert config.logging.log_level == "DEBUG"


def test_apply_overrides_bad_language():
    with pytest.raises(ValueError):
        cli.apply_overrides(Config(), run_args(lang_a="Elvish"))


def test_run_rejects_unknown_language(capsys):
    assert cli.main(["run", "--lang-a", "Elvish"]) == 1
    assert "Configuration error" in capsys.readouterr().out
