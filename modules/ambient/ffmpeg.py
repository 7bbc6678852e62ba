"""
FFmpeg 进程管理模块

负责构建环境视频的 FFmpeg 命令，执行单次编码尝试，解析进度，
并在超时或取消时强制结束进程、删除不完整的输出文件。
"""

import os
import signal
import subprocess
import threading
import time
import uuid
import logging
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Callable, Iterator, Tuple, Dict

from .config import AmbientConfig
from .encoders import EncoderConfig

logger = logging.getLogger(__name__)

WATCHDOG_INTERVAL = 0.2  # 看门狗检查间隔（秒）
STDERR_TAIL_LINES = 20
PARTIAL_SUFFIX = ".part"


class AttemptOutcome(Enum):
    """单次编码尝试的结果"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class ProgressEvent:
    """编码进度事件

    percent 为直接上报的百分比，timemark 为已处理的媒体时间（HH:MM:SS.xx），
    二者可能只有其一。
    """

    percent: Optional[float] = None
    timemark: Optional[str] = None
    frame: Optional[int] = None


ProgressCallback = Callable[[ProgressEvent], None]


def kill_process(process: subprocess.Popen) -> None:
    """强制结束进程（POSIX 下结束整个进程组）"""
    if process.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Failed to kill process group {process.pid}: {e}")
        process.kill()


@contextmanager
def managed_process(command: List[str]) -> Iterator[subprocess.Popen]:
    """启动子进程，离开作用域时保证进程已结束

    Args:
        command: 命令列表

    Yields:
        subprocess.Popen 对象
    """
    process = subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=(os.name == "posix"),
    )
    try:
        yield process
    finally:
        kill_process(process)
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} did not exit after kill")
        for stream in (process.stdout, process.stderr):
            if stream:
                stream.close()


def partial_output_path(target_path: str) -> str:
    """获取编码过程中使用的临时输出路径

    与 target_path 同目录，保留扩展名以便 ffmpeg 选择封装格式。
    每次尝试使用不同的文件名，同名任务并发时互不覆盖。

    Args:
        target_path: 最终输出路径

    Returns:
        形如 <name>.<随机串>.part.mp4 的路径
    """
    root, ext = os.path.splitext(target_path)
    return f"{root}.{uuid.uuid4().hex[:8]}{PARTIAL_SUFFIX}{ext}"


def remove_partial_output(path: str) -> bool:
    """删除不完整的输出文件

    Returns:
        是否删除了文件
    """
    try:
        os.remove(path)
        logger.info(f"Removed partial output {path}")
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to remove partial output {path}: {e}")
        return False


class FFmpegRunner:
    """FFmpeg 运行器

    固定输出配方：缩放到固定高度并保持宽高比、去掉音频、启用 faststart。
    每次尝试只有视频编码器及其参数不同。
    """

    def __init__(self, config: AmbientConfig):
        """初始化 FFmpeg 运行器

        Args:
            config: 转码配置
        """
        self.config = config
        self.ffmpeg_path = config.ffmpeg_path

    def build_command(self, source_path: str, target_path: str, encoder: EncoderConfig) -> List[str]:
        """构建 FFmpeg 命令

        Args:
            source_path: 原片路径
            target_path: 派生文件路径
            encoder: 编码器配置

        Returns:
            FFmpeg 命令列表
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            "-y",
        ]

        # -hwaccel 是输入选项，必须放在 -i 之前
        if self.config.hwaccel:
            cmd.extend(["-hwaccel", self.config.hwaccel])

        cmd.extend(["-i", source_path])

        # 固定输出配方
        cmd.extend([
            "-vf", f"scale=-2:{self.config.target_height}",
            "-an",
            "-movflags", "+faststart",
        ])

        # 编码器及其参数
        cmd.extend(["-c:v", encoder.name])
        cmd.extend(encoder.options)

        # 进度输出到 stdout
        cmd.extend(["-progress", "pipe:1", "-nostats"])

        cmd.append(target_path)
        return cmd

    def run_attempt(
        self,
        source_path: str,
        target_path: str,
        encoder: EncoderConfig,
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AttemptOutcome:
        """执行一次编码尝试

        阻塞直到进程结束、超时或被取消。编码先写入同目录下的临时文件，
        只有成功时才重命名为 target_path，其余结果都会删除临时文件。

        Args:
            source_path: 原片路径
            target_path: 派生文件路径
            encoder: 编码器配置
            on_progress: 进度回调
            timeout: 超时时间（秒），为空时使用配置值
            cancel_event: 置位时立即结束进程

        Returns:
            AttemptOutcome
        """
        if timeout is None:
            timeout = self.config.attempt_timeout
        os.makedirs(os.path.dirname(os.path.abspath(target_path)), exist_ok=True)
        partial_path = partial_output_path(target_path)
        command = self.build_command(source_path, partial_path, encoder)
        logger.info(f"[ffmpeg] {self.get_command_line_string(command)}")

        promoted = False
        try:
            outcome = self._encode(command, partial_path, encoder, on_progress, timeout, cancel_event)
            if outcome is AttemptOutcome.SUCCEEDED:
                os.replace(partial_path, target_path)
                promoted = True
        finally:
            if not promoted:
                remove_partial_output(partial_path)
        return outcome

    def _encode(
        self,
        command: List[str],
        output_path: str,
        encoder: EncoderConfig,
        on_progress: Optional[ProgressCallback],
        timeout: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> AttemptOutcome:
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        verdict: Dict[str, AttemptOutcome] = {}
        done = threading.Event()

        try:
            with managed_process(command) as process:
                stderr_thread = threading.Thread(
                    target=_drain_stream,
                    args=(process.stderr, stderr_tail),
                    daemon=True,
                    name=f"FFmpegStderr-{process.pid}",
                )
                stderr_thread.start()

                watchdog = threading.Thread(
                    target=self._watch,
                    args=(process, timeout, cancel_event, done, verdict),
                    daemon=True,
                    name=f"FFmpegWatchdog-{process.pid}",
                )
                watchdog.start()

                try:
                    self._read_progress(process, on_progress)
                    return_code = process.wait()
                finally:
                    done.set()
                    watchdog.join()
                stderr_thread.join(timeout=1)
        except OSError as e:
            logger.error(f"[ffmpeg] Failed to start encoder {encoder.name}: {e}")
            return AttemptOutcome.FAILED

        outcome = verdict.get("outcome")
        if outcome is AttemptOutcome.TIMED_OUT:
            logger.error(f"[ffmpeg] {encoder.name} timed out after {timeout}s, process killed")
            return outcome
        if outcome is AttemptOutcome.CANCELLED:
            logger.warning(f"[ffmpeg] {encoder.name} cancelled, process killed")
            return outcome

        if return_code == 0 and os.path.isfile(output_path) and os.path.getsize(output_path) > 0:
            return AttemptOutcome.SUCCEEDED

        details = " | ".join(line.strip() for line in stderr_tail if line.strip())
        logger.error(f"[ffmpeg] {encoder.name} failed with code {return_code}: {details or 'no output'}")
        return AttemptOutcome.FAILED

    def _read_progress(self, process: subprocess.Popen, on_progress: Optional[ProgressCallback]) -> None:
        """读取 -progress 输出，每个 progress= 行结束一个进度块"""
        block: Dict[str, str] = {}
        for line in process.stdout:
            key, sep, value = line.strip().partition("=")
            if not sep:
                continue
            if key != "progress":
                block[key] = value
                continue
            if on_progress is not None:
                on_progress(parse_progress_block(block))
            block = {}

    @staticmethod
    def _watch(
        process: subprocess.Popen,
        timeout: Optional[float],
        cancel_event: Optional[threading.Event],
        done: threading.Event,
        verdict: Dict[str, AttemptOutcome],
    ) -> None:
        """看门狗：超时或取消时强制结束进程"""
        deadline = time.monotonic() + timeout if timeout else None
        while not done.wait(WATCHDOG_INTERVAL):
            if cancel_event is not None and cancel_event.is_set():
                verdict["outcome"] = AttemptOutcome.CANCELLED
            elif deadline is not None and time.monotonic() >= deadline:
                verdict["outcome"] = AttemptOutcome.TIMED_OUT
            else:
                continue
            kill_process(process)
            return

    def version(self, timeout: float = 10) -> Tuple[bool, str]:
        """执行 ffmpeg -version

        Returns:
            (成功标志, 版本行或错误信息)
        """
        try:
            result = subprocess.run(
                [self.ffmpeg_path, "-version"],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return False, f"ffmpeg -version timed out after {timeout}s"
        except OSError as e:
            return False, str(e)

        first_line = (result.stdout or "").splitlines()[0] if result.stdout else ""
        if result.returncode == 0 or "ffmpeg version" in first_line:
            return True, first_line
        return False, (result.stderr or "").strip() or f"exit code {result.returncode}"

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）"""
        return " ".join(command)


def parse_progress_block(block: Dict[str, str]) -> ProgressEvent:
    """将一个 -progress 输出块转换为进度事件

    Args:
        block: 键值对，如 {"frame": "120", "out_time": "00:00:04.000000"}

    Returns:
        ProgressEvent
    """
    timemark = block.get("out_time")
    if timemark in (None, "", "N/A"):
        timemark = None
    try:
        frame = int(block["frame"]) if "frame" in block else None
    except ValueError:
        frame = None
    return ProgressEvent(timemark=timemark, frame=frame)


def _drain_stream(stream, tail: deque) -> None:
    try:
        for line in stream:
            tail.append(line)
    except (OSError, ValueError):
        pass
