"""
环境视频转码管理器

负责转码流水线的编排：
- 将上传文件或本地路径放入缓存
- 同步探测原片的音轨/字幕/时长
- 派生文件未缓存时，在后台线程中启动编码器级联
- 提供任务进度查询
- 进程退出时结束编码器进程并删除缓存的原片
"""

import os
import threading
import logging
from typing import Dict, Optional, Any, List

from .config import AmbientConfig
from .cache import MediaCache, split_name
from .cascade import EncoderCascade, RegistryObserver
from .ffmpeg import FFmpegRunner
from .ffprobe import FFprobeRunner, ProbeResult
from .job import Job
from .registry import JobRegistry, CleanupSet

logger = logging.getLogger(__name__)


class AmbientManager:
    """环境视频转码管理器

    任务注册表和清理集合由管理器实例持有，启动时为空，关闭时清空。
    """

    def __init__(
        self,
        config: AmbientConfig,
        registry: Optional[JobRegistry] = None,
        cleanup: Optional[CleanupSet] = None,
        cache: Optional[MediaCache] = None,
        prober: Optional[FFprobeRunner] = None,
        runner: Optional[FFmpegRunner] = None,
    ):
        """初始化管理器

        Args:
            config: 转码配置
            registry: 任务注册表
            cleanup: 退出时删除的文件集合
            cache: 缓存层
            prober: FFprobe 运行器
            runner: FFmpeg 运行器
        """
        self.config = config
        self.registry = registry or JobRegistry()
        self.cleanup = cleanup or CleanupSet()
        self.cache = cache or MediaCache(config.output_dir, config.upload_dir, config.media_url_prefix)
        self.prober = prober or FFprobeRunner(config.ffprobe_path, timeout=config.probe_timeout)
        self.runner = runner or FFmpegRunner(config)

        self.lock = threading.RLock()
        self._cascades: Dict[str, EncoderCascade] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._closed = False

    def ingest_upload(self, file_storage, transcode: bool = True) -> Dict[str, Any]:
        """处理上传的文件

        先保存到暂存目录，再放入缓存（缓存中已有同名原片时保留原有文件），
        最后删除暂存文件。

        Args:
            file_storage: werkzeug FileStorage 对象
            transcode: 是否生成环境视频

        Returns:
            响应字典
        """
        base_name, ext = split_name(file_storage.filename or "")
        temp_path = self.cache.stage_upload(file_storage)
        try:
            original_path = self.cache.place_original(temp_path, base_name, ext, move=True, overwrite=False)
        finally:
            self.cache.discard(temp_path)
        return self._ingest(original_path, base_name, ext, transcode)

    def ingest_path(self, file_path: str, transcode: bool = True) -> Dict[str, Any]:
        """处理本地文件路径

        Args:
            file_path: 本地文件路径（可信）
            transcode: 是否生成环境视频

        Returns:
            响应字典

        Raises:
            FileNotFoundError: 文件不存在
        """
        if not os.path.isfile(file_path):
            raise FileNotFoundError(file_path)

        base_name, ext = split_name(file_path)
        logger.info(f"Processing file: {file_path} -> {self.cache.original_path(base_name, ext)}")
        original_path = self.cache.place_original(file_path, base_name, ext)
        return self._ingest(original_path, base_name, ext, transcode)

    def _ingest(self, original_path: str, base_name: str, ext: str, transcode: bool) -> Dict[str, Any]:
        # 以派生文件命名的原片与缓存的派生文件无法区分，退出时保留
        if self.cache.is_derivative_filename(original_path):
            logger.warning(f"{os.path.basename(original_path)} is named like an ambient derivative, keeping it on shutdown")
        else:
            self.cleanup.add(original_path)
        source_url = self.cache.media_url(self.cache.original_filename(base_name, ext))

        probe_result = self.prober.probe(original_path)

        if not transcode:
            job = Job.completed(source_url)
            self.registry.put(job.job_id, job)
            return self._response(job, probe_result, None)

        derivative_url = self.cache.media_url(self.cache.derivative_filename(base_name))
        if self.cache.has_derivative(base_name):
            logger.info(f"[ffmpeg] Reusing cached ambient for {self.cache.derivative_filename(base_name)}")
            job = Job.completed(source_url, derivative_url)
            self.registry.put(job.job_id, job)
            return self._response(job, probe_result, derivative_url)

        job = Job.pending(source_url)
        self.registry.put(job.job_id, job)
        response = self._response(job, probe_result, derivative_url)
        self.start_cascade(
            job.job_id,
            original_path,
            self.cache.derivative_path(base_name),
            derivative_url,
            probe_result=probe_result,
        )
        return response

    @staticmethod
    def _response(job: Job, probe_result: ProbeResult, derivative_url: Optional[str]) -> Dict[str, Any]:
        # derivativeUrl 是派生文件将来的地址，是否可用以 ready 为准
        response = {
            "id": job.job_id,
            "sourceUrl": job.source_url,
            "derivativeUrl": derivative_url,
            "ready": job.ready,
        }
        response.update(probe_result.to_dict())
        return response

    def start_cascade(
        self,
        job_id: str,
        source_path: str,
        target_path: str,
        derivative_url: str,
        probe_result: Optional[ProbeResult] = None,
    ) -> EncoderCascade:
        """在后台线程中启动编码器级联

        Args:
            job_id: 任务 ID
            source_path: 原片路径
            target_path: 派生文件路径
            derivative_url: 派生文件 URL
            probe_result: 已有的探测结果

        Returns:
            EncoderCascade 对象
        """
        cascade = EncoderCascade(
            job_id,
            source_path,
            target_path,
            self.config.encoders,
            runner=self.runner,
            prober=self.prober,
            observer=RegistryObserver(self.registry, derivative_url),
            attempt_timeout=self.config.attempt_timeout,
            retry_delay=self.config.retry_delay,
            probe_result=probe_result,
        )
        thread = threading.Thread(
            target=self._run_cascade,
            args=(cascade,),
            daemon=True,
            name=f"AmbientCascade-{job_id[:8]}",
        )
        with self.lock:
            if self._closed:
                cascade.cancel()
            self._cascades[job_id] = cascade
            self._threads[job_id] = thread
        thread.start()
        return cascade

    def _run_cascade(self, cascade: EncoderCascade) -> None:
        try:
            state = cascade.run()
            logger.info(f"Job {cascade.job_id} finished: {state.value}")
        except Exception:
            logger.exception(f"Cascade for job {cascade.job_id} crashed")
            self.registry.delete(cascade.job_id)
        finally:
            with self.lock:
                self._cascades.pop(cascade.job_id, None)
                self._threads.pop(cascade.job_id, None)

    def get_job(self, job_id: str) -> Optional[Job]:
        """获取任务

        Args:
            job_id: 任务 ID

        Returns:
            Job 对象，不存在（从未创建或所有编码器失败）返回 None
        """
        return self.registry.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """等待任务的级联线程结束

        Returns:
            线程是否已结束
        """
        with self.lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def active_jobs(self) -> List[str]:
        with self.lock:
            return list(self._cascades.keys())

    def get_status_summary(self) -> Dict[str, Any]:
        """获取状态摘要"""
        jobs = self.registry.snapshot()
        return {
            "total_jobs": len(jobs),
            "ready_jobs": sum(1 for job in jobs if job.ready),
            "active_cascades": len(self.active_jobs()),
            "pending_cleanup": len(self.cleanup),
        }

    def shutdown(self, timeout: float = 5.0) -> None:
        """关闭管理器

        结束所有编码器进程、删除不完整的输出、删除缓存的原片并清空注册表。
        可重复调用。

        Args:
            timeout: 等待每个级联线程结束的时间（秒）
        """
        with self.lock:
            if self._closed:
                return
            self._closed = True
            cascades = list(self._cascades.values())
            threads = list(self._threads.values())

        for cascade in cascades:
            cascade.cancel()
        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Cascade thread {thread.name} still running after shutdown")

        self.cleanup.drain()
        self.registry.clear()
        logger.info("Ambient manager stopped")
