from __future__ import annotations

import pytest

from cleanscribe.pipeline.stage_01_audio_cleaning import main as stage_01
from cleanscribe.pipeline.stage_02_transcription import main as stage_02


def test_stage_01_missing_input_dir_exits_one(tmp_path, monkeypatch, tools_on_path):
    monkeypatch.chdir(tmp_path)
    assert stage_01(["m4a", "--input-dir", str(tmp_path / "nope"), "--run-id", "s1"]) == 1
    assert (tmp_path / "logs" / "s1" / "stage_01_audio_cleaning.log").is_file()


def test_stage_01_missing_ffmpeg_exits_one(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("cleanscribe.utils.process_utils.shutil.which", lambda name: None)
    assert stage_01(["m4a"]) == 1


def test_stage_01_zero_jobs_is_usage_error(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit) as exc:
        stage_01(["m4a", "-j", "0"])
    assert exc.value.code == 2


def test_stage_02_without_clean_wavs_exits_one(tmp_path, monkeypatch, tools_on_path):
    monkeypatch.chdir(tmp_path)
    assert stage_02(["--mode", "native", "--no-diarize"]) == 1
