"""
编码器配置

按优先级排列的硬件/软件编码器列表：最快的硬件编码器在前，通用软件编码器兜底。
"""

from dataclasses import dataclass
from typing import Tuple, List, Dict, Any, Iterable


@dataclass(frozen=True)
class EncoderConfig:
    """单个编码器配置

    name 为 ffmpeg 视频编码器名称，options 为该编码器专用的速度/质量参数。
    """

    name: str
    options: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "options": list(self.options)}


DEFAULT_ENCODERS: Tuple[EncoderConfig, ...] = (
    EncoderConfig("h264_amf", ("-quality", "speed", "-cq", "23")),  # AMD
    EncoderConfig("h264_nvenc", ("-preset", "p4", "-cq", "23")),  # NVIDIA
    EncoderConfig("h264_qsv", ("-preset", "fast", "-q", "23")),  # Intel
    EncoderConfig("libx264", ("-preset", "fast", "-crf", "23")),  # 软件编码
)


def encoders_from_list(items: Iterable[Any]) -> List[EncoderConfig]:
    """从配置文件中的列表构建编码器配置

    每项可以是编码器名称字符串，或 {"name": ..., "options": [...]} 字典。

    Args:
        items: 配置列表

    Returns:
        EncoderConfig 列表

    Raises:
        ValueError: 配置项格式不正确
    """
    encoders = []
    for item in items:
        if isinstance(item, str):
            encoders.append(EncoderConfig(item))
        elif isinstance(item, dict) and item.get("name"):
            options = tuple(str(opt) for opt in (item.get("options") or []))
            encoders.append(EncoderConfig(str(item["name"]), options))
        else:
            raise ValueError(f"Invalid encoder entry: {item!r}")
    return encoders
