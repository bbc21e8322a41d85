from __future__ import annotations

from pathlib import Path

import pytest

from cleanscribe.config.configuration import ConfigurationManager, resolve_mode
from cleanscribe.entity.config_entity import DEFAULT_AUDIO_FILTER
from cleanscribe.exception.exception import ConfigurationError


def test_defaults_without_yaml(tmp_path):
    run = ConfigurationManager(config_path=tmp_path / "missing.yaml").get_run_config("M4A", run_id="r1", mode="native")

    assert run.extension == "m4a"
    assert run.run_id == "r1"
    assert run.mode == "native"
    assert run.cleaning.audio_filter == DEFAULT_AUDIO_FILTER
    assert run.cleaning.clean_dir == Path("./clean")
    assert run.cleaning.skip_existing is True and run.cleaning.force is False
    assert run.transcription.diarize is True
    assert run.transcription.output_extensions == ("json", "srt")
    assert run.transcribe_jobs == 1 and run.gpu_slots == 1
    assert run.clean_jobs >= 1
    assert run.transcription.docker is None
    assert run.report_dir == Path("artifacts/runs/r1")


def test_yaml_then_overrides(tmp_path):
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(
        "cleaning:\n  audio_filter: anull\n"
        "transcription:\n  model: medium\n  diarize: false\n"
        "concurrency:\n  clean_jobs: 3\n"
    )
    mgr = ConfigurationManager(
        config_path=cfg_file,
        overrides={"transcription": {"model": "large-v3", "device": None}, "concurrency": {"transcribe_jobs": 2}},
    )
    run = mgr.get_run_config("wav", mode="docker")

    assert run.cleaning.audio_filter == "anull"
    assert run.transcription.model == "large-v3"
    assert run.transcription.device == "cuda"              # None override keeps the lower layer
    assert run.transcription.diarize is False
    assert run.clean_jobs == 3 and run.transcribe_jobs == 2
    assert run.transcription.docker.image == "whisperx:torch241-cu121"
    assert run.transcription.docker.cache_dir == Path("~/.cache/whisperx-docker").expanduser()


@pytest.mark.parametrize("bad", [
    {"concurrency": {"clean_jobs": -1}},
    {"concurrency": {"transcribe_jobs": 0}},
    {"concurrency": {"gpu_slots": "many"}},
    {"cleaning": {"timeout_sec": 0}},
])
def test_invalid_values(tmp_path, bad):
    mgr = ConfigurationManager(config_path=tmp_path / "none.yaml", overrides=bad)
    with pytest.raises(ConfigurationError):
        mgr.get_run_config("wav", mode="native")


def test_invalid_extension_and_mode(tmp_path):
    mgr = ConfigurationManager(config_path=tmp_path / "none.yaml")
    with pytest.raises(ConfigurationError):
        mgr.get_run_config("ogg", mode="native")
    with pytest.raises(ConfigurationError):
        mgr.get_run_config("wav", mode="kubernetes")


def test_auto_mode_follows_docker_availability(monkeypatch):
    monkeypatch.setattr("cleanscribe.utils.process_utils.shutil.which", lambda name: "/usr/bin/docker")
    assert resolve_mode("auto") == "docker"
    monkeypatch.setattr("cleanscribe.utils.process_utils.shutil.which", lambda name: None)
    assert resolve_mode("auto") == "native"
    assert resolve_mode("DOCKER") == "docker"


def test_shipped_config_yaml_loads():
    cfg_file = Path(__file__).resolve().parents[1] / "configs" / "config.yaml"
    run = ConfigurationManager(config_path=cfg_file).get_run_config("mp3", mode="native")
    assert run.transcription.credential_env == "HUGGINGFACE_TOKEN"
