"""
FFprobe 媒体信息获取模块

使用 ffprobe 获取视频的音轨、字幕轨和时长。
元数据只用于前端的轨道选择，探测失败时降级为空列表和 0 时长，不向调用方抛出异常。
"""

import json
import math
import subprocess
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

UNDETERMINED_LANGUAGE = "und"


@dataclass(frozen=True)
class AudioTrack:
    """音轨描述（index 为源文件中的流序号，不重新编号）"""

    index: int
    codec: str
    language: str = UNDETERMINED_LANGUAGE
    channels: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "codec": self.codec,
            "language": self.language,
            "channels": self.channels,
        }


@dataclass(frozen=True)
class SubtitleTrack:
    """字幕轨描述"""

    index: int
    codec: str
    language: str = UNDETERMINED_LANGUAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "codec": self.codec,
            "language": self.language,
        }


@dataclass
class ProbeResult:
    """探测结果"""

    audio_tracks: List[AudioTrack] = field(default_factory=list)
    subtitles: List[SubtitleTrack] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audioTracks": [track.to_dict() for track in self.audio_tracks],
            "subtitles": [track.to_dict() for track in self.subtitles],
            "duration": self.duration,
        }


class FFprobeRunner:
    """FFprobe 运行器

    使用 ffprobe 获取本地视频文件的流信息。
    """

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30):
        """初始化 FFprobe 运行器

        Args:
            ffprobe_path: ffprobe 可执行文件路径
            timeout: 默认超时时间（秒）
        """
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def probe(self, file_path: str, timeout: Optional[float] = None) -> ProbeResult:
        """探测文件的音轨、字幕轨和时长

        任何失败（文件不存在、文件损坏、ffprobe 缺失、超时、输出无法解析）
        都返回空结果。

        Args:
            file_path: 本地文件路径
            timeout: 超时时间（秒），为空时使用默认值

        Returns:
            ProbeResult
        """
        timeout = timeout or self.timeout
        cmd = [
            self.ffprobe_path,
            "-hide_banner",
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            file_path,
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"ffprobe timeout after {timeout}s for {file_path}")
            return ProbeResult()
        except OSError as e:
            logger.warning(f"Failed to run ffprobe ({self.ffprobe_path}): {e}")
            return ProbeResult()

        if result.returncode != 0:
            error_msg = (result.stderr or "").strip() or "Unknown ffprobe error"
            logger.warning(f"ffprobe error (code {result.returncode}) for {file_path}: {error_msg}")
            return ProbeResult()

        try:
            raw_info = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse ffprobe output for {file_path}: {e}")
            return ProbeResult()

        parsed = self.parse_probe_output(raw_info)
        logger.info(
            f"Probed {file_path}: duration={parsed.duration}s, "
            f"audio={len(parsed.audio_tracks)}, subtitles={len(parsed.subtitles)}"
        )
        return parsed

    @staticmethod
    def parse_probe_output(raw_info: Any) -> ProbeResult:
        """解析 ffprobe 输出的原始 JSON

        Args:
            raw_info: ffprobe 原始输出（已反序列化）

        Returns:
            ProbeResult
        """
        result = ProbeResult()
        if not isinstance(raw_info, dict):
            return result

        for stream in raw_info.get("streams") or []:
            if not isinstance(stream, dict):
                continue
            codec_type = stream.get("codec_type", "")
            index = _to_int(stream.get("index"), -1)
            codec = stream.get("codec_name") or ""
            tags = stream.get("tags") or {}
            language = tags.get("language") or UNDETERMINED_LANGUAGE

            if codec_type == "audio":
                result.audio_tracks.append(AudioTrack(
                    index=index,
                    codec=codec,
                    language=language,
                    channels=_to_int(stream.get("channels"), None),
                ))
            elif codec_type == "subtitle":
                result.subtitles.append(SubtitleTrack(
                    index=index,
                    codec=codec,
                    language=language,
                ))

        format_info = raw_info.get("format") or {}
        try:
            duration = float(format_info.get("duration", 0) or 0)
        except (ValueError, TypeError):
            duration = 0.0
        if not math.isfinite(duration) or duration < 0:
            duration = 0.0
        result.duration = duration

        return result


def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
    try:
        return int(value)
    except (ValueError, TypeError):
        return default
