"""Tests for the encoder cascade state machine."""

import os

import pytest

from modules.ambient.cascade import EncoderCascade, ProgressObserver, RegistryObserver
from modules.ambient.encoders import EncoderConfig
from modules.ambient.ffmpeg import AttemptOutcome, FFmpegRunner, ProgressEvent
from modules.ambient.ffprobe import FFprobeRunner, ProbeResult
from modules.ambient.job import CascadeState, Job
from modules.ambient.registry import JobRegistry

posix_only = pytest.mark.skipif(os.name != "posix", reason="fake ffmpeg is a POSIX shell script")

ENCODERS = [EncoderConfig("first"), EncoderConfig("second"), EncoderConfig("third")]


class ScriptedRunner:
    """Plays back a fixed outcome (and progress timemarks) per encoder name."""

    def __init__(self, script):
        self.script = script
        self.calls = []

    def run_attempt(self, source, target, encoder, on_progress=None, timeout=None, cancel_event=None):
        self.calls.append(encoder.name)
        outcome, timemarks = self.script[encoder.name]
        if isinstance(outcome, Exception):
            raise outcome
        for timemark in timemarks:
            on_progress(ProgressEvent(timemark=timemark))
        if outcome is AttemptOutcome.SUCCEEDED:
            with open(target, "wb") as f:
                f.write(b"ambient")
        return outcome


class CountingProber:
    def __init__(self, duration=10.0):
        self.calls = 0
        self.duration = duration

    def probe(self, path):
        self.calls += 1
        return ProbeResult(duration=self.duration)


class RecordingObserver(RegistryObserver):
    """Registry observer that also records every progress value a poller could see."""

    def __init__(self, registry, derivative_url):
        super().__init__(registry, derivative_url)
        self.history = []
        self.attempts = []

    def _record(self, job_id):
        job = self.registry.get(job_id)
        if job is not None:
            self.history.append((job.progress, job.ready))

    def on_attempt_started(self, job_id, index, encoder):
        super().on_attempt_started(job_id, index, encoder)
        self.attempts.append(encoder.name)
        self._record(job_id)

    def on_progress(self, job_id, progress):
        super().on_progress(job_id, progress)
        self._record(job_id)

    def on_succeeded(self, job_id):
        super().on_succeeded(job_id)
        self._record(job_id)


@pytest.fixture
def registry():
    return JobRegistry()


def make_cascade(registry, runner, tmp_path, prober=None, encoders=ENCODERS, **kwargs):
    job = Job.pending("/media/clip.mkv", job_id="job1")
    registry.put(job.job_id, job)
    observer = RecordingObserver(registry, "/media/clip-ambient.mp4")
    cascade = EncoderCascade(
        job.job_id,
        str(tmp_path / "clip.mkv"),
        str(tmp_path / "clip-ambient.mp4"),
        encoders,
        runner=runner,
        prober=prober or CountingProber(),
        observer=observer,
        retry_delay=0.01,
        **kwargs
    )
    return cascade, observer


def test_two_failures_then_success(registry, tmp_path):
    runner = ScriptedRunner({
        "first": (AttemptOutcome.FAILED, ["00:00:03.00", "00:00:06.00"]),
        "second": (AttemptOutcome.TIMED_OUT, ["00:00:04.00"]),
        "third": (AttemptOutcome.SUCCEEDED, ["00:00:02.00", "00:00:09.50", "00:00:10.00"]),
    })
    cascade, observer = make_cascade(registry, runner, tmp_path)

    assert cascade.run() is CascadeState.SUCCEEDED

    job = registry.get("job1")
    assert (job.progress, job.ready) == (100, True)
    assert job.derivative_url == "/media/clip-ambient.mp4"
    assert runner.calls == ["first", "second", "third"]

    progress = [value for value, _ in observer.history]
    peak = max(progress[:progress.index(0, 1)])
    assert peak == 60
    assert any(later < peak for later in progress[progress.index(60):])


def test_progress_invariants_hold_in_flight(registry, tmp_path):
    runner = ScriptedRunner({
        "first": (AttemptOutcome.FAILED, ["00:00:10.00", "00:00:12.00"]),
        "second": (AttemptOutcome.FAILED, []),
        "third": (AttemptOutcome.SUCCEEDED, ["00:00:09.99", "00:00:10.00"]),
    })
    cascade, observer = make_cascade(registry, runner, tmp_path)
    cascade.run()

    for progress, ready in observer.history:
        assert (progress == 100) == ready
        if not ready:
            assert 0 <= progress <= 99


def test_progress_does_not_go_backwards_within_an_attempt(registry, tmp_path):
    runner = ScriptedRunner({
        "first": (AttemptOutcome.SUCCEEDED, ["00:00:05.00", "00:00:03.00", "00:00:07.00"]),
    })
    cascade, observer = make_cascade(registry, runner, tmp_path, encoders=[EncoderConfig("first")])
    cascade.run()

    in_flight = [progress for progress, ready in observer.history if not ready]
    assert in_flight == sorted(in_flight)


def test_exhaustion_removes_job(registry, tmp_path):
    runner = ScriptedRunner({
        "first": (AttemptOutcome.FAILED, []),
        "second": (AttemptOutcome.TIMED_OUT, []),
        "third": (AttemptOutcome.FAILED, []),
    })
    cascade, _ = make_cascade(registry, runner, tmp_path)

    assert cascade.run() is CascadeState.EXHAUSTED
    assert registry.get("job1") is None
    assert runner.calls == ["first", "second", "third"]


def test_unexpected_error_advances_to_next_encoder(registry, tmp_path):
    runner = ScriptedRunner({
        "first": (RuntimeError("boom"), []),
        "second": (AttemptOutcome.SUCCEEDED, []),
    })
    cascade, _ = make_cascade(registry, runner, tmp_path, encoders=ENCODERS[:2])

    assert cascade.run() is CascadeState.SUCCEEDED
    assert runner.calls == ["first", "second"]


def test_probe_runs_once_per_cascade(registry, tmp_path):
    prober = CountingProber()
    runner = ScriptedRunner({
        "first": (AttemptOutcome.FAILED, []),
        "second": (AttemptOutcome.FAILED, []),
        "third": (AttemptOutcome.SUCCEEDED, []),
    })
    cascade, _ = make_cascade(registry, runner, tmp_path, prober=prober)
    cascade.run()

    assert prober.calls == 1


def test_existing_probe_result_is_reused(registry, tmp_path):
    prober = CountingProber()
    runner = ScriptedRunner({"first": (AttemptOutcome.SUCCEEDED, [])})
    cascade, _ = make_cascade(
        registry, runner, tmp_path, prober=prober,
        encoders=[EncoderConfig("first")], probe_result=ProbeResult(duration=4.0),
    )
    cascade.run()

    assert prober.calls == 0
    assert cascade.duration == 4.0


def test_cancel_before_run_abandons(registry, tmp_path):
    runner = ScriptedRunner({})
    cascade, _ = make_cascade(registry, runner, tmp_path)
    cascade.cancel()

    assert cascade.run() is CascadeState.ABANDONED
    assert runner.calls == []
    assert registry.get("job1") is None


def test_default_observer_is_silent(tmp_path):
    runner = ScriptedRunner({"first": (AttemptOutcome.SUCCEEDED, ["00:00:01.00"])})
    cascade = EncoderCascade(
        "job", str(tmp_path / "a.mp4"), str(tmp_path / "a-ambient.mp4"), [EncoderConfig("first")],
        runner=runner, prober=CountingProber(),
    )
    assert isinstance(cascade.observer, ProgressObserver)
    assert cascade.run() is CascadeState.SUCCEEDED


@posix_only
def test_real_runner_falls_through_failure_and_timeout(registry, make_config, fake_ffprobe, tmp_path):
    config = make_config(attempt_timeout=0.5)
    cascade, observer = make_cascade(
        registry,
        FFmpegRunner(config),
        tmp_path,
        prober=FFprobeRunner(fake_ffprobe),
        encoders=[EncoderConfig("fail_amf"), EncoderConfig("hang_nvenc"), EncoderConfig("libx264")],
        attempt_timeout=0.5,
    )

    assert cascade.run() is CascadeState.SUCCEEDED
    assert observer.attempts == ["fail_amf", "hang_nvenc", "libx264"]
    assert (tmp_path / "clip-ambient.mp4").read_bytes() == b"ambient"
    job = registry.get("job1")
    assert (job.progress, job.ready) == (100, True)
    # fail_amf reached 50%, the next attempt restarted from zero
    assert (50, False) in observer.history
    assert observer.history[observer.history.index((50, False)) + 1] == (0, False)


@posix_only
def test_real_runner_timeout_on_last_encoder_exhausts(registry, make_config, fake_ffprobe, tmp_path):
    cascade, _ = make_cascade(
        registry,
        FFmpegRunner(make_config()),
        tmp_path,
        prober=FFprobeRunner(fake_ffprobe),
        encoders=[EncoderConfig("hang_x264")],
        attempt_timeout=0.5,
    )

    assert cascade.run() is CascadeState.EXHAUSTED
    assert not (tmp_path / "clip-ambient.mp4").exists()
    assert registry.get("job1") is None
