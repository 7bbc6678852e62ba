"""
编码器级联

对单个原片按优先级依次尝试编码器，直到生成派生文件或所有编码器都失败。
状态转换：PENDING(i) -> RUNNING -> SUCCEEDED | FAILED_ATTEMPT -> PENDING(i+1) ... -> EXHAUSTED，
关闭进程时可转为 ABANDONED。

进度通过 ProgressObserver 上报，默认实现写入任务注册表供客户端轮询。
"""

import threading
import logging
from typing import Optional, Sequence

from .encoders import EncoderConfig
from .ffmpeg import AttemptOutcome, FFmpegRunner, ProgressEvent
from .ffprobe import FFprobeRunner, ProbeResult
from .job import CascadeState, compute_progress
from .registry import JobRegistry

logger = logging.getLogger(__name__)


class ProgressObserver:
    """级联进度观察者

    默认实现什么都不做，子类按需覆盖。
    """

    def on_attempt_started(self, job_id: str, index: int, encoder: EncoderConfig) -> None:
        pass

    def on_progress(self, job_id: str, progress: int) -> None:
        pass

    def on_succeeded(self, job_id: str) -> None:
        pass

    def on_exhausted(self, job_id: str) -> None:
        pass

    def on_abandoned(self, job_id: str) -> None:
        pass


class RegistryObserver(ProgressObserver):
    """将级联进度写入任务注册表"""

    def __init__(self, registry: JobRegistry, derivative_url: str):
        self.registry = registry
        self.derivative_url = derivative_url

    def on_attempt_started(self, job_id: str, index: int, encoder: EncoderConfig) -> None:
        # 新的尝试从 0 开始，客户端可能看到进度回退
        self.registry.update(job_id, progress=0, ready=False)

    def on_progress(self, job_id: str, progress: int) -> None:
        self.registry.advance_progress(job_id, progress)

    def on_succeeded(self, job_id: str) -> None:
        self.registry.update(job_id, progress=100, ready=True, derivative_url=self.derivative_url)

    def on_exhausted(self, job_id: str) -> None:
        self.registry.delete(job_id)

    def on_abandoned(self, job_id: str) -> None:
        self.registry.delete(job_id)


class EncoderCascade:
    """单个转码任务的编码器级联

    同一任务同一时刻最多只有一个编码器进程。
    """

    def __init__(
        self,
        job_id: str,
        source_path: str,
        target_path: str,
        encoders: Sequence[EncoderConfig],
        runner: FFmpegRunner,
        prober: FFprobeRunner,
        observer: Optional[ProgressObserver] = None,
        attempt_timeout: Optional[float] = None,
        retry_delay: float = 1.0,
        probe_result: Optional[ProbeResult] = None,
    ):
        """初始化级联

        Args:
            job_id: 任务 ID
            source_path: 原片路径
            target_path: 派生文件路径
            encoders: 按优先级排列的编码器列表
            runner: FFmpeg 运行器
            prober: FFprobe 运行器
            observer: 进度观察者
            attempt_timeout: 单次尝试超时（秒），为空时使用运行器配置
            retry_delay: 编排异常后等待多久再尝试下一个编码器（秒）
            probe_result: 已有的探测结果，提供时不再重复探测
        """
        self.job_id = job_id
        self.source_path = source_path
        self.target_path = target_path
        self.encoders = list(encoders)
        self.runner = runner
        self.prober = prober
        self.observer = observer or ProgressObserver()
        self.attempt_timeout = attempt_timeout
        self.retry_delay = retry_delay

        self.state = CascadeState.PENDING
        self.config_index = 0
        self._probe_result = probe_result
        self._cancel_event = threading.Event()

    @property
    def duration(self) -> float:
        """原片时长，首次访问时探测并缓存"""
        if self._probe_result is None:
            self._probe_result = self.prober.probe(self.source_path)
        return self._probe_result.duration

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """放弃级联：结束当前编码器进程并停止后续尝试"""
        self._cancel_event.set()

    def is_finished(self) -> bool:
        return self.state in (CascadeState.SUCCEEDED, CascadeState.EXHAUSTED, CascadeState.ABANDONED)

    def run(self) -> CascadeState:
        """执行级联直到成功、耗尽或被取消

        Returns:
            最终状态
        """
        while True:
            if self.cancelled:
                return self._abandon()

            if self.config_index >= len(self.encoders):
                self._transition(CascadeState.EXHAUSTED)
                logger.error(f"[ffmpeg] All encoders failed for job {self.job_id}")
                self.observer.on_exhausted(self.job_id)
                return self.state

            encoder = self.encoders[self.config_index]
            self._transition(CascadeState.PENDING)
            logger.info(
                f"[ffmpeg] Trying encoder {self.config_index + 1}/{len(self.encoders)}: "
                f"{encoder.name} for job {self.job_id}"
            )

            try:
                outcome = self._attempt(encoder)
            except Exception:
                logger.exception(f"[ffmpeg] Unexpected error running {encoder.name} for job {self.job_id}")
                self._transition(CascadeState.FAILED_ATTEMPT)
                self.config_index += 1
                # 取消时立即返回
                self._cancel_event.wait(self.retry_delay)
                continue

            if outcome is AttemptOutcome.SUCCEEDED:
                self._transition(CascadeState.SUCCEEDED)
                logger.info(f"[ffmpeg] ambient ready: {self.target_path} ({encoder.name})")
                self.observer.on_succeeded(self.job_id)
                return self.state

            if outcome is AttemptOutcome.CANCELLED:
                return self._abandon()

            self._transition(CascadeState.FAILED_ATTEMPT)
            self.config_index += 1

    def _attempt(self, encoder: EncoderConfig) -> AttemptOutcome:
        duration = self.duration
        self.observer.on_attempt_started(self.job_id, self.config_index, encoder)
        self._transition(CascadeState.RUNNING)

        def on_progress(event: ProgressEvent) -> None:
            progress = compute_progress(event.percent, event.timemark, duration)
            self.observer.on_progress(self.job_id, progress)

        return self.runner.run_attempt(
            self.source_path,
            self.target_path,
            encoder,
            on_progress=on_progress,
            timeout=self.attempt_timeout,
            cancel_event=self._cancel_event,
        )

    def _abandon(self) -> CascadeState:
        self._transition(CascadeState.ABANDONED)
        self.observer.on_abandoned(self.job_id)
        return self.state

    def _transition(self, state: CascadeState) -> None:
        if state is CascadeState.PENDING:
            logger.debug(f"Job {self.job_id}: {self.state.value} -> pending({self.config_index})")
        else:
            logger.debug(f"Job {self.job_id}: {self.state.value} -> {state.value}")
        self.state = state
