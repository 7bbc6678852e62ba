"""
环境视频转码配置模块

定义转码流水线相关的配置参数和默认值。
"""

import os
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field

from .encoders import EncoderConfig, DEFAULT_ENCODERS, encoders_from_list


@dataclass
class AmbientConfig:
    """环境视频转码配置

    从全局配置中读取 ambient 段落，提供默认值。
    """

    # 目录配置
    data_dir: str = "data"
    upload_dir: str = ""  # 上传暂存目录，为空时使用 data_dir/uploads
    output_dir: str = ""  # 原片与派生文件缓存目录，为空时使用 data_dir/outputs
    media_url_prefix: str = "/media"

    # 外部工具
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # 输出配方
    target_height: int = 144  # 派生视频高度，宽度按比例缩放
    hwaccel: str = "auto"  # -hwaccel 输入选项，为空则不添加
    loglevel: str = "error"

    # 超时与重试
    attempt_timeout: float = 600.0  # 单次编码尝试的超时时间（秒）
    retry_delay: float = 1.0  # 编排异常后重试下一编码器前的等待（秒）
    probe_timeout: float = 30.0  # ffprobe 探测超时时间（秒）

    # 编码器优先级列表
    encoders: List[EncoderConfig] = field(default_factory=lambda: list(DEFAULT_ENCODERS))

    def __post_init__(self):
        if not self.upload_dir:
            self.upload_dir = os.path.join(self.data_dir, "uploads")
        if not self.output_dir:
            self.output_dir = os.path.join(self.data_dir, "outputs")

    @classmethod
    def from_app_config(cls, app_config: Optional[Dict[str, Any]]) -> 'AmbientConfig':
        """从应用配置创建 AmbientConfig

        环境变量 FFMPEG_PATH / FFPROBE_PATH / AMBIENT_DATA_DIR 优先于配置文件。

        Args:
            app_config: 全局配置字典

        Returns:
            AmbientConfig 实例
        """
        section = (app_config or {}).get("ambient", {}) or {}
        kwargs: Dict[str, Any] = {}

        # 字符串类配置
        for key in ("data_dir", "upload_dir", "output_dir", "media_url_prefix",
                    "ffmpeg_path", "ffprobe_path", "hwaccel", "loglevel"):
            if key in section and section[key] is not None:
                kwargs[key] = str(section[key])

        # 数值类配置
        if "target_height" in section:
            kwargs["target_height"] = int(section["target_height"] or 144)
        if "attempt_timeout" in section:
            kwargs["attempt_timeout"] = float(section["attempt_timeout"] or 600)
        if "retry_delay" in section:
            kwargs["retry_delay"] = float(section["retry_delay"] or 0)
        if "probe_timeout" in section:
            kwargs["probe_timeout"] = float(section["probe_timeout"] or 30)

        # 自定义编码器列表
        if section.get("encoders"):
            kwargs["encoders"] = encoders_from_list(section["encoders"])

        # 环境变量覆盖
        if os.environ.get("FFMPEG_PATH"):
            kwargs["ffmpeg_path"] = os.environ["FFMPEG_PATH"]
        if os.environ.get("FFPROBE_PATH"):
            kwargs["ffprobe_path"] = os.environ["FFPROBE_PATH"]
        if os.environ.get("AMBIENT_DATA_DIR"):
            kwargs["data_dir"] = os.environ["AMBIENT_DATA_DIR"]
            kwargs.pop("upload_dir", None)
            kwargs.pop("output_dir", None)

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """转换为可写入 config.json 的字典"""
        return {
            "data_dir": self.data_dir,
            "upload_dir": self.upload_dir,
            "output_dir": self.output_dir,
            "media_url_prefix": self.media_url_prefix,
            "ffmpeg_path": self.ffmpeg_path,
            "ffprobe_path": self.ffprobe_path,
            "target_height": self.target_height,
            "hwaccel": self.hwaccel,
            "loglevel": self.loglevel,
            "attempt_timeout": self.attempt_timeout,
            "retry_delay": self.retry_delay,
            "probe_timeout": self.probe_timeout,
            "encoders": [encoder.to_dict() for encoder in self.encoders],
        }


def get_ambient_config(app_config: Optional[Dict[str, Any]]) -> AmbientConfig:
    """获取转码配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        AmbientConfig 实例
    """
    return AmbientConfig.from_app_config(app_config)
