"""
转码任务数据模型

定义轮询客户端看到的任务记录、级联状态以及进度计算。
"""

import math
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

# 100 只由完成事件写入，进行中的进度最多到 99
MAX_IN_FLIGHT_PROGRESS = 99


class CascadeState(Enum):
    """编码器级联状态"""
    PENDING = "pending"              # 等待尝试某个编码器
    RUNNING = "running"              # 编码器进程运行中
    SUCCEEDED = "succeeded"          # 派生文件已生成
    FAILED_ATTEMPT = "failed_attempt"  # 本次尝试失败（含超时），将尝试下一个
    EXHAUSTED = "exhausted"          # 所有编码器均失败
    ABANDONED = "abandoned"          # 被取消（进程关闭）


@dataclass
class Job:
    """转码任务记录

    由任务注册表持有，客户端通过轮询读取。
    """

    job_id: str
    source_url: str
    derivative_url: Optional[str] = None
    progress: int = 0
    ready: bool = False

    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @classmethod
    def pending(cls, source_url: str, job_id: Optional[str] = None) -> 'Job':
        """创建尚未完成的任务"""
        return cls(job_id=job_id or new_job_id(), source_url=source_url)

    @classmethod
    def completed(cls, source_url: str, derivative_url: Optional[str] = None,
                  job_id: Optional[str] = None) -> 'Job':
        """创建已就绪的任务（派生文件已缓存或无需转码）"""
        return cls(
            job_id=job_id or new_job_id(),
            source_url=source_url,
            derivative_url=derivative_url,
            progress=100,
            ready=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）"""
        return {
            "id": self.job_id,
            "progress": self.progress,
            "ready": self.ready,
            "sourceUrl": self.source_url,
            "derivativeUrl": self.derivative_url,
        }


def new_job_id() -> str:
    """生成新的任务 ID，每个请求唯一"""
    return uuid.uuid4().hex


def parse_timemark(timemark: Any) -> Optional[float]:
    """解析 HH:MM:SS.xx 格式的时间标记

    Args:
        timemark: 时间标记字符串

    Returns:
        秒数，无法解析时返回 None
    """
    if not isinstance(timemark, str) or not timemark:
        return None
    negative = timemark.startswith("-")
    parts = timemark.lstrip("-").split(":")
    if not 1 <= len(parts) <= 3:
        return None
    try:
        values = [float(part) for part in parts]
    except ValueError:
        return None
    seconds = 0.0
    for value in values:
        seconds = seconds * 60 + value
    if not math.isfinite(seconds):
        return None
    return -seconds if negative else seconds


def clamp_progress(percent: float) -> int:
    """取整并限制在 [0, 99] 区间"""
    if not math.isfinite(percent):
        return 0
    return max(0, min(MAX_IN_FLIGHT_PROGRESS, int(round(percent))))


def compute_progress(percent: Any = None, timemark: Any = None, duration: float = 0.0) -> int:
    """计算进行中的转码进度

    优先使用直接上报的百分比；否则根据已处理时长 / 总时长换算；都不可用时为 0。

    Args:
        percent: 上报的百分比
        timemark: 已处理的媒体时间（HH:MM:SS.xx）
        duration: 探测得到的总时长（秒）

    Returns:
        0 到 99 之间的整数
    """
    if isinstance(percent, (int, float)) and not isinstance(percent, bool) and math.isfinite(percent):
        return clamp_progress(percent)

    elapsed = parse_timemark(timemark)
    if elapsed is not None and duration and duration > 0:
        return clamp_progress(elapsed / duration * 100)

    return 0
