"""
环境视频 API 端点

上传/本地路径入口、进度轮询、缓存文件的静态访问以及 ffmpeg 自检。
"""

import logging
from typing import Any

from flask import jsonify, request, send_from_directory, abort

logger = logging.getLogger(__name__)


def parse_flag(value: Any, default: bool = True) -> bool:
    """解析 useFfmpeg 之类的开关

    只有明确的 false 值会关闭开关。

    Args:
        value: 请求中的原始值
        default: 缺省值

    Returns:
        布尔值
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("false", "0", "no", "off")


def register_routes(app, manager):
    """注册环境视频 API 路由

    Args:
        app: Flask 应用实例
        manager: AmbientManager 实例
    """

    @app.route('/video/upload-local', methods=['POST'])
    def ambient_upload_local():
        """接收 multipart 上传的视频（字段名 video）

        查询参数 useFfmpeg=false 时不生成环境视频。

        Returns:
            任务 ID、原片/派生文件 URL、就绪标志和轨道信息
        """
        video = request.files.get('video')
        if video is None or not video.filename:
            return jsonify({"error": "No video file provided"}), 400

        use_ffmpeg = parse_flag(request.args.get('useFfmpeg'))
        try:
            return jsonify(manager.ingest_upload(video, transcode=use_ffmpeg))
        except Exception as e:
            logger.exception(f"Error processing upload {video.filename!r}")
            return jsonify({"error": f"Failed to process file: {e}"}), 500

    @app.route('/video/upload-electron', methods=['POST'])
    def ambient_upload_path():
        """接收本地文件路径

        请求体（JSON 或表单）：
        {
            "filePath": "/path/to/video.mkv",
            "useFfmpeg": true
        }

        Returns:
            同 /video/upload-local
        """
        data = request.get_json(silent=True) or request.form.to_dict() or {}
        file_path = data.get('filePath')
        use_ffmpeg = parse_flag(data.get('useFfmpeg'))
        logger.info(f"Received path ingest request: {file_path} (ffmpeg {'enabled' if use_ffmpeg else 'disabled'})")

        if not file_path:
            return jsonify({"error": "No file path provided"}), 400

        try:
            return jsonify(manager.ingest_path(str(file_path), transcode=use_ffmpeg))
        except FileNotFoundError:
            logger.error(f"File not found: {file_path}")
            return jsonify({"error": "File not found"}), 404
        except Exception as e:
            logger.exception(f"Error processing file {file_path}")
            return jsonify({"error": f"Failed to process file: {e}"}), 500

    @app.route('/progress/<job_id>', methods=['GET'])
    def ambient_progress(job_id):
        """轮询任务进度

        任务不存在（从未创建、所有编码器均失败或服务已重启）时返回 404，
        客户端应视为失败并停止轮询。

        Args:
            job_id: 任务 ID

        Returns:
            {"id", "progress", "ready", "sourceUrl", "derivativeUrl"}
        """
        job = manager.get_job(job_id)
        if job is None:
            return jsonify({"error": "Unknown job"}), 404
        return jsonify(job.to_dict())

    @app.route(f"{manager.cache.media_url_prefix}/<path:filename>", methods=['GET'])
    def ambient_media(filename):
        """按文件名访问缓存中的原片和派生文件"""
        if manager.cache.resolve(filename) is None:
            abort(404)
        return send_from_directory(manager.cache.output_dir, filename)

    @app.route('/api/ambient/status', methods=['GET'])
    def ambient_status():
        return jsonify({"success": True, "summary": manager.get_status_summary()})

    @app.route('/test/ffmpeg', methods=['GET'])
    def ambient_ffmpeg_check():
        """检查 ffmpeg 是否可用"""
        ok, detail = manager.runner.version()
        if ok:
            return jsonify({
                "success": True,
                "message": "FFmpeg is working correctly",
                "path": manager.runner.ffmpeg_path,
                "version": detail,
            })
        logger.error(f"FFmpeg test failed: {detail}")
        return jsonify({
            "success": False,
            "message": "FFmpeg test failed",
            "path": manager.runner.ffmpeg_path,
            "error": detail,
        }), 500
