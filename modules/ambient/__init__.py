"""
环境视频转码模块

为播放器生成低分辨率、无音频的"环境"派生视频，用作模糊背景。

核心特性：
- 按优先级尝试硬件编码器，全部失败时回退到软件编码
- 单次尝试 10 分钟超时，超时强制结束进程并删除不完整的输出
- 以清洗后的文件名为键缓存派生文件，同名文件只转码一次
- 内存中的任务注册表，客户端轮询进度
"""

from .config import AmbientConfig, get_ambient_config
from .encoders import EncoderConfig, DEFAULT_ENCODERS
from .ffprobe import FFprobeRunner, ProbeResult, AudioTrack, SubtitleTrack
from .ffmpeg import FFmpegRunner, AttemptOutcome, ProgressEvent
from .job import Job, CascadeState, compute_progress
from .registry import JobRegistry, CleanupSet
from .cache import MediaCache, sanitize_base_name
from .cascade import EncoderCascade, ProgressObserver, RegistryObserver
from .manager import AmbientManager

__all__ = [
    'AmbientConfig',
    'get_ambient_config',
    'EncoderConfig',
    'DEFAULT_ENCODERS',
    'FFprobeRunner',
    'ProbeResult',
    'AudioTrack',
    'SubtitleTrack',
    'FFmpegRunner',
    'AttemptOutcome',
    'ProgressEvent',
    'Job',
    'CascadeState',
    'compute_progress',
    'JobRegistry',
    'CleanupSet',
    'MediaCache',
    'sanitize_base_name',
    'EncoderCascade',
    'ProgressObserver',
    'RegistryObserver',
    'AmbientManager',
]
