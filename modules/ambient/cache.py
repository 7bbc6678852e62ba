"""
缓存层

以清洗后的文件名为键，在磁盘上保存原片和派生文件。
不维护索引：派生文件名由原片的 base name 确定，磁盘上存在该文件即为缓存命中。
"""

import os
import re
import shutil
import uuid
import logging
from typing import Tuple, Optional

logger = logging.getLogger(__name__)

DERIVATIVE_SUFFIX = "-ambient"
DERIVATIVE_EXTENSION = ".mp4"
DEFAULT_EXTENSION = ".mp4"
DEFAULT_BASE_NAME = "video"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_UNSAFE_EXT_CHARS = re.compile(r"[^A-Za-z0-9]")


def sanitize_base_name(name: str) -> str:
    """清洗文件 base name

    将 [A-Za-z0-9_-] 以外的字符替换为下划线。结果再次清洗不变。

    Args:
        name: 原始名称（不含扩展名）

    Returns:
        清洗后的名称，空名称返回 "video"
    """
    cleaned = _UNSAFE_CHARS.sub("_", name or "")
    return cleaned or DEFAULT_BASE_NAME


def split_name(file_name: str) -> Tuple[str, str]:
    """拆分文件名为清洗后的 base name 和扩展名

    Args:
        file_name: 文件名或路径

    Returns:
        (base name, 扩展名)，无扩展名时使用 .mp4
    """
    stem, ext = os.path.splitext(os.path.basename(file_name or ""))
    ext = _UNSAFE_EXT_CHARS.sub("", ext[1:]) if ext else ""
    return sanitize_base_name(stem), f".{ext}" if ext else DEFAULT_EXTENSION


class MediaCache:
    """原片与派生文件缓存

    output_dir 同时保存原片和 <name>-ambient.mp4 派生文件；
    upload_dir 为上传暂存目录，每个请求处理完即清空自己的文件。
    """

    def __init__(self, output_dir: str, upload_dir: str, media_url_prefix: str = "/media"):
        """初始化缓存

        Args:
            output_dir: 缓存目录
            upload_dir: 上传暂存目录
            media_url_prefix: 静态文件 URL 前缀
        """
        self.output_dir = os.path.abspath(output_dir)
        self.upload_dir = os.path.abspath(upload_dir)
        self.media_url_prefix = media_url_prefix.rstrip("/")
        os.makedirs(self.output_dir, exist_ok=True)
        os.makedirs(self.upload_dir, exist_ok=True)

    def original_filename(self, base_name: str, ext: str = DEFAULT_EXTENSION) -> str:
        return f"{sanitize_base_name(base_name)}{ext}"

    def derivative_filename(self, base_name: str) -> str:
        return f"{sanitize_base_name(base_name)}{DERIVATIVE_SUFFIX}{DERIVATIVE_EXTENSION}"

    def original_path(self, base_name: str, ext: str = DEFAULT_EXTENSION) -> str:
        return os.path.join(self.output_dir, self.original_filename(base_name, ext))

    def derivative_path(self, base_name: str) -> str:
        return os.path.join(self.output_dir, self.derivative_filename(base_name))

    @staticmethod
    def is_derivative_filename(filename: str) -> bool:
        """文件名是否为派生文件的命名形式（<name>-ambient.mp4）"""
        return os.path.basename(filename).endswith(DERIVATIVE_SUFFIX + DERIVATIVE_EXTENSION)

    def has_derivative(self, base_name: str) -> bool:
        """派生文件是否已缓存（存在且非空）"""
        path = self.derivative_path(base_name)
        return os.path.isfile(path) and os.path.getsize(path) > 0

    def media_url(self, filename: str) -> str:
        """获取缓存文件对外的 URL"""
        return f"{self.media_url_prefix}/{filename}"

    def resolve(self, filename: str) -> Optional[str]:
        """将 URL 中的文件名解析为缓存目录内的路径

        Args:
            filename: 文件名

        Returns:
            文件路径，文件名不安全或文件不存在时返回 None
        """
        if not filename or os.path.basename(filename) != filename:
            return None
        path = os.path.join(self.output_dir, filename)
        if os.path.isfile(path):
            return path
        return None

    def stage_upload(self, file_storage) -> str:
        """将上传的文件保存到暂存目录

        Args:
            file_storage: werkzeug FileStorage 对象

        Returns:
            暂存文件路径
        """
        temp_path = os.path.join(self.upload_dir, uuid.uuid4().hex)
        file_storage.save(temp_path)
        logger.info(f"Staged upload {file_storage.filename!r} at {temp_path}")
        return temp_path

    def place_original(self, source_path: str, base_name: str, ext: str,
                       move: bool = False, overwrite: bool = True) -> str:
        """将原片放入缓存目录

        Args:
            source_path: 源文件路径
            base_name: 清洗后的 base name
            ext: 扩展名
            move: 是否移动（否则复制）
            overwrite: 目标已存在时是否覆盖，已存在的派生文件始终保留

        Returns:
            缓存中的原片路径
        """
        target = self.original_path(base_name, ext)
        if os.path.abspath(source_path) == target:
            return target

        # 派生文件不会被同名原片覆盖
        if os.path.exists(target) and (not overwrite or self.is_derivative_filename(target)):
            logger.info(f"Original already cached: {target}")
            if move:
                os.remove(source_path)
            return target

        if move:
            shutil.move(source_path, target)
        else:
            shutil.copyfile(source_path, target)
        logger.info(f"Cached original {source_path} -> {target}")
        return target

    def discard(self, path: str) -> None:
        """删除文件（不存在时忽略）"""
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
