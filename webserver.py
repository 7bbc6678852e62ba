import os
import sys
import json
import signal
import atexit
import logging
from logging.handlers import TimedRotatingFileHandler

from flask import Flask, jsonify
from flask_cors import CORS

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from modules.ambient import AmbientConfig, AmbientManager
from modules.ambient.api import register_routes

# Configuration file path
CONFIG_FILE = os.environ.get("CONFIG_FILE", "config/config.json")
LOG_DIR = os.environ.get("LOG_DIR", "logs")

logger = logging.getLogger(__name__)


def setup_logging(log_dir=LOG_DIR):
    """Configure console and rotating file logging"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # 配置较少日志输出的模块
    for module in ['werkzeug', 'urllib3']:
        logging.getLogger(module).setLevel(logging.WARNING)

    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)

    # 添加按日期滚动的文件处理器
    root = logging.getLogger()
    log_path = os.path.abspath(os.path.join(log_dir, 'webserver.log'))
    for handler in root.handlers:
        if isinstance(handler, TimedRotatingFileHandler) and handler.baseFilename == log_path:
            return
    file_handler = TimedRotatingFileHandler(
        log_path,
        when='midnight',
        interval=1,
        backupCount=3  # 保留3天日志
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def load_config(config_file=CONFIG_FILE):
    """Load configuration file, creating it with defaults when missing"""
    config = {
        "ambient": AmbientConfig().to_dict()
    }
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                config.update(loaded_config)
                logging.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {config_file}")
    except Exception as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    return config


def create_app(app_config=None, manager=None):
    """Create the Flask application

    Args:
        app_config: 全局配置字典，为空时读取配置文件
        manager: AmbientManager 实例，为空时按配置创建

    Returns:
        Flask 应用实例，manager 保存在 app.extensions["ambient"]
    """
    if manager is None:
        if app_config is None:
            app_config = load_config()
        manager = AmbientManager(AmbientConfig.from_app_config(app_config))

    app = Flask(__name__)
    CORS(app)  # Enable CORS
    app.extensions["ambient"] = manager

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    register_routes(app, manager)
    return app


def install_shutdown_hooks(manager):
    """进程退出或收到 SIGINT/SIGTERM 时清理编码器进程和缓存的原片"""
    def handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, shutting down")
        manager.shutdown()
        sys.exit(0)

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)
    if hasattr(signal, "SIGQUIT"):
        signal.signal(signal.SIGQUIT, handle_signal)
    atexit.register(manager.shutdown)


# Start the server
if __name__ == '__main__':
    setup_logging()
    app = create_app()
    ambient_manager = app.extensions["ambient"]
    install_shutdown_hooks(ambient_manager)
    logging.info(f"Media cache: {ambient_manager.cache.output_dir}")
    app.run(host='127.0.0.1', port=int(os.environ.get('PORT', 4000)), debug=False, threaded=True)
