from __future__ import annotations

import logging
import os
from dataclasses import replace

from cleanscribe.components.audio_cleaning import AudioCleaning, build_ffmpeg_command
from cleanscribe.components.fingerprint_store import compute_fingerprint, meta_path_for
from cleanscribe.components.source_discovery import discover_sources
from cleanscribe.entity.artifact_entity import FailureReason, UnitStatus
from cleanscribe.utils.process_utils import RunResult

from conftest import FakeRunner, ffmpeg_handler, make_audio


def _source(workspace, name="talk.m4a", size=100, mtime=1000):
    make_audio(workspace["input"] / name, size=size, mtime=mtime)
    return {s.path.name: s for s in discover_sources(workspace["input"], "m4a")}[name]


def test_ffmpeg_command_is_mono_16k_pcm(make_run_config, tmp_path):
    cfg = make_run_config().cleaning
    cmd = build_ffmpeg_command(cfg, tmp_path / "in.m4a", tmp_path / "out.wav")

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-ac") + 1] == "1"
    assert cmd[cmd.index("-ar") + 1] == "16000"
    assert cmd[cmd.index("-c:a") + 1] == "pcm_s16le"
    assert cmd[cmd.index("-af") + 1] == cfg.audio_filter
    assert cmd[-1] == str(tmp_path / "out.wav")


def test_first_run_cleans_and_records_fingerprint(workspace, make_run_config):
    src = _source(workspace)
    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    cleaner = AudioCleaning(make_run_config().cleaning, runner=runner)

    res = cleaner.run(src)

    out = workspace["clean"] / "talk_clean.wav"
    assert res.status == UnitStatus.SUCCEEDED
    assert out.is_file()
    assert "input_size=100" in meta_path_for(out).read_text()
    assert not list(workspace["clean"].glob(".*.part"))
    assert len(runner.calls_to("ffmpeg")) == 1


def test_unchanged_rerun_skips_ffmpeg(workspace, make_run_config):
    src = _source(workspace)
    cfg = make_run_config().cleaning
    AudioCleaning(cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    res = AudioCleaning(cfg, runner=runner).run(src)

    assert res.status == UnitStatus.SKIPPED
    assert runner.calls == []


def test_filter_change_reruns_once_and_rewrites_fingerprint(workspace, make_run_config):
    src = _source(workspace)
    AudioCleaning(make_run_config().cleaning, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    new_cfg = make_run_config(cleaning={"audio_filter": "loudnorm=I=-23"}).cleaning
    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    res = AudioCleaning(new_cfg, runner=runner).run(src)

    assert res.status == UnitStatus.SUCCEEDED
    assert len(runner.calls_to("ffmpeg")) == 1
    meta = meta_path_for(workspace["clean"] / "talk_clean.wav").read_text()
    assert f"filter_sha={compute_fingerprint('loudnorm=I=-23')}" in meta


def test_source_edit_reruns_once(workspace, make_run_config):
    src = _source(workspace)
    cfg = make_run_config().cleaning
    AudioCleaning(cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    os.utime(src.path, (5000, 5000))
    edited = _source(workspace, mtime=5000)
    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    res = AudioCleaning(cfg, runner=runner).run(edited)

    assert res.status == UnitStatus.SUCCEEDED
    assert len(runner.calls_to("ffmpeg")) == 1


def test_force_overrides_valid_fingerprint(workspace, make_run_config):
    src = _source(workspace)
    AudioCleaning(make_run_config().cleaning, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    forced = make_run_config(cache={"force_clean": True}).cleaning
    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    res = AudioCleaning(forced, runner=runner).run(src)

    assert res.status == UnitStatus.SUCCEEDED
    assert len(runner.calls_to("ffmpeg")) == 1


def test_skip_disabled_always_reruns(workspace, make_run_config):
    src = _source(workspace)
    cfg = make_run_config(cache={"skip_clean_existing": False}).cleaning
    AudioCleaning(cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    AudioCleaning(cfg, runner=runner).run(src)

    assert len(runner.calls_to("ffmpeg")) == 1


def test_failed_regeneration_leaves_no_fingerprint(workspace, make_run_config):
    src = _source(workspace)
    cfg = make_run_config().cleaning
    AudioCleaning(cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    new_cfg = replace(cfg, audio_filter="anull")
    res = AudioCleaning(new_cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler(fail_names={"talk.m4a"})})).run(src)

    assert res.status == UnitStatus.FAILED
    assert res.reason == FailureReason.NONZERO_EXIT
    assert res.returncode == 1
    assert "Invalid data" in res.detail
    assert not meta_path_for(workspace["clean"] / "talk_clean.wav").exists()
    assert not list(workspace["clean"].glob(".*.part"))


def test_missing_ffmpeg_is_tool_not_found(workspace, make_run_config):
    src = _source(workspace)
    res = AudioCleaning(make_run_config().cleaning, runner=FakeRunner({})).run(src)

    assert res.status == UnitStatus.FAILED
    assert res.reason == FailureReason.TOOL_NOT_FOUND


def test_timeout_is_its_own_reason(workspace, make_run_config):
    src = _source(workspace)
    runner = FakeRunner({"ffmpeg": lambda args: RunResult(returncode=-1, stdout="", stderr="", timed_out=True)})
    cfg = make_run_config(cleaning={"timeout_sec": 5}).cleaning

    res = AudioCleaning(cfg, runner=runner).run(src)

    assert res.status == UnitStatus.FAILED
    assert res.reason == FailureReason.TIMEOUT
    assert not (workspace["clean"] / "talk_clean.wav").exists()


def test_source_edited_while_cleaning_is_recleaned_next_run(workspace, make_run_config):
    src = _source(workspace)
    clean = ffmpeg_handler()

    def edit_during_ffmpeg(args):
        res = clean(args)
        make_audio(src.path, size=200, mtime=5000)
        return res

    cfg = make_run_config().cleaning
    AudioCleaning(cfg, runner=FakeRunner({"ffmpeg": edit_during_ffmpeg})).run(src)

    meta = meta_path_for(workspace["clean"] / "talk_clean.wav").read_text()
    assert "input_size=100" in meta and "input_mtime=1000" in meta

    runner = FakeRunner({"ffmpeg": ffmpeg_handler()})
    res = AudioCleaning(cfg, runner=runner).run(_source(workspace, size=200, mtime=5000))

    assert res.status == UnitStatus.SUCCEEDED
    assert len(runner.calls_to("ffmpeg")) == 1
    assert "input_size 100 -> 200" in res.detail


def test_recleaning_reason_is_logged_at_info(workspace, make_run_config, caplog):
    src = _source(workspace)
    AudioCleaning(make_run_config().cleaning, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)

    pkg_logger = logging.getLogger("cleanscribe")
    pkg_logger.addHandler(caplog.handler)
    try:
        new_cfg = make_run_config(cleaning={"audio_filter": "anull"}).cleaning
        res = AudioCleaning(new_cfg, runner=FakeRunner({"ffmpeg": ffmpeg_handler()})).run(src)
    finally:
        pkg_logger.removeHandler(caplog.handler)

    assert res.detail.startswith("re-cleaned: changed: filter_sha")
    assert any(
        r.levelno == logging.INFO and "Re-cleaning (changed: filter_sha" in r.getMessage()
        for r in caplog.records
    )
