"""
任务注册表

进程内的任务 ID -> 任务记录映射，以及进程退出时需要删除的文件集合。
两者都只存在于内存中，进程重启后丢失。
"""

import os
import time
import threading
import logging
from typing import Dict, Optional, List, Set

from .job import Job

logger = logging.getLogger(__name__)


class JobRegistry:
    """任务注册表

    单层映射，不保证跨任务的顺序。所有读写都在锁内进行。
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self.lock = threading.RLock()

    def put(self, job_id: str, job: Job) -> None:
        """保存任务

        Args:
            job_id: 任务 ID
            job: 任务记录
        """
        with self.lock:
            self._jobs[job_id] = job

    def get(self, job_id: str) -> Optional[Job]:
        """获取任务

        Args:
            job_id: 任务 ID

        Returns:
            Job 对象，不存在返回 None
        """
        with self.lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        """删除任务

        Args:
            job_id: 任务 ID

        Returns:
            是否存在并被删除
        """
        with self.lock:
            return self._jobs.pop(job_id, None) is not None

    def update(self, job_id: str, **fields) -> Optional[Job]:
        """在锁内修改任务字段

        任务不存在时不做任何事（已被删除的任务不会复活）。

        Args:
            job_id: 任务 ID
            **fields: 需要修改的字段

        Returns:
            修改后的 Job 对象，不存在返回 None
        """
        with self.lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for name, value in fields.items():
                setattr(job, name, value)
            job.updated_at = time.time()
            return job

    def advance_progress(self, job_id: str, progress: int) -> Optional[Job]:
        """更新进度，同一次尝试内进度不回退

        Args:
            job_id: 任务 ID
            progress: 新进度

        Returns:
            修改后的 Job 对象，不存在返回 None
        """
        with self.lock:
            job = self._jobs.get(job_id)
            if job is None or job.ready:
                return job
            if progress > job.progress:
                job.progress = progress
                job.updated_at = time.time()
            return job

    def snapshot(self) -> List[Job]:
        """获取所有任务的列表"""
        with self.lock:
            return list(self._jobs.values())

    def clear(self) -> None:
        with self.lock:
            self._jobs.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self.lock:
            return job_id in self._jobs


class CleanupSet:
    """进程退出时需要删除的文件集合"""

    def __init__(self):
        self._paths: Set[str] = set()
        self.lock = threading.Lock()

    def add(self, path: str) -> None:
        with self.lock:
            self._paths.add(os.path.abspath(path))

    def discard(self, path: str) -> None:
        with self.lock:
            self._paths.discard(os.path.abspath(path))

    def paths(self) -> List[str]:
        with self.lock:
            return sorted(self._paths)

    def drain(self) -> int:
        """删除集合中的所有文件并清空集合

        已不存在的文件直接跳过。

        Returns:
            实际删除的文件数量
        """
        with self.lock:
            paths = list(self._paths)
            self._paths.clear()

        removed = 0
        for path in paths:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove {path} on shutdown: {e}")
        if removed:
            logger.info(f"Removed {removed} cached original(s) on shutdown")
        return removed

    def __len__(self) -> int:
        with self.lock:
            return len(self._paths)
