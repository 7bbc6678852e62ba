"""Shared fixtures: shell scripts standing in for ffmpeg and ffprobe."""

import json
import os
import stat

import pytest

from modules.ambient import AmbientConfig, AmbientManager, EncoderConfig

PROBE_OUTPUT = {
    "streams": [
        {"index": 0, "codec_type": "video", "codec_name": "h264"},
        {"index": 1, "codec_type": "audio", "codec_name": "aac", "channels": 6, "tags": {"language": "eng"}},
        {"index": 2, "codec_type": "audio", "codec_name": "ac3", "channels": 2},
        {"index": 3, "codec_type": "subtitle", "codec_name": "subrip", "tags": {"language": "fre"}},
    ],
    "format": {"duration": "10.000000"},
}

# Encoder behaviour is picked from the -c:v value:
#   fail_*  reports some progress, writes partial output, exits 1
#   hang_*  writes partial output and never finishes
#   anything else reports progress and produces the output
FAKE_FFMPEG = r"""#!/bin/sh
if [ "$1" = "-version" ]; then
  echo "ffmpeg version 6.0-fake Copyright (c) 2000-2023"
  exit 0
fi
if [ -n "$FFMPEG_MARKER" ]; then
  echo "$@" >> "$FFMPEG_MARKER"
fi
out=""
enc=""
prev=""
for a in "$@"; do
  if [ "$prev" = "-c:v" ]; then enc="$a"; fi
  prev="$a"
  out="$a"
done
case "$enc" in
  fail_*)
    printf 'frame=10\nout_time=00:00:05.000000\nprogress=continue\n'
    printf 'partial' > "$out"
    echo "Unknown encoder '$enc'" >&2
    exit 1
    ;;
  hang_*)
    printf 'partial' > "$out"
    exec sleep 30
    ;;
  *)
    printf 'frame=10\nout_time=00:00:05.000000\nprogress=continue\n'
    printf 'frame=18\nout_time=00:00:09.000000\nprogress=continue\n'
    printf 'ambient' > "$out"
    printf 'frame=20\nout_time=00:00:10.000000\nprogress=end\n'
    exit 0
    ;;
esac
"""


def write_script(path, body):
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def make_script(tmp_path):
    """Writes an executable shell script into tmp_path and returns its path."""
    def factory(name, body):
        return write_script(tmp_path / name, body)
    return factory


@pytest.fixture
def fake_ffprobe(tmp_path):
    """An ffprobe that prints a fixed stream list with a 10 second duration."""
    body = "#!/bin/sh\ncat <<'EOF'\n" + json.dumps(PROBE_OUTPUT) + "\nEOF\n"
    return write_script(tmp_path / "ffprobe", body)


@pytest.fixture
def fake_ffmpeg(tmp_path):
    return write_script(tmp_path / "ffmpeg", FAKE_FFMPEG)


@pytest.fixture
def ffmpeg_marker(tmp_path, monkeypatch):
    """File that records every encoder invocation of the fake ffmpeg."""
    marker = tmp_path / "ffmpeg_calls.log"
    monkeypatch.setenv("FFMPEG_MARKER", str(marker))
    return marker


@pytest.fixture
def make_config(tmp_path, fake_ffmpeg, fake_ffprobe):
    def factory(encoders=("libx264",), **overrides):
        values = dict(
            data_dir=str(tmp_path / "data"),
            ffmpeg_path=fake_ffmpeg,
            ffprobe_path=fake_ffprobe,
            hwaccel="",
            attempt_timeout=5.0,
            retry_delay=0.01,
            encoders=[EncoderConfig(name) for name in encoders],
        )
        values.update(overrides)
        return AmbientConfig(**values)
    return factory


@pytest.fixture
def make_manager(make_config):
    managers = []

    def factory(encoders=("libx264",), **overrides):
        manager = AmbientManager(make_config(encoders, **overrides))
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.shutdown()


@pytest.fixture
def source_video(tmp_path):
    video = tmp_path / "incoming" / "My Movie (2020).mkv"
    video.parent.mkdir()
    video.write_bytes(b"not really a video" * 64)
    return video


posix_only = pytest.mark.skipif(os.name != "posix", reason="fake encoders are POSIX shell scripts")
