import logging
import logging.handlers
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """
    设置应用程序的日志。
    日志输出到控制台；给定 log_file 时同时写入滚动文件。
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # 移除所有现有的handler，避免重复日志输出
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    logging.root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    log_file = log_file or os.getenv("LOG_FILE")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logging.root.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logging.root.addHandler(console_handler)

    logging.captureWarnings(True)


if __name__ == '__main__':
    setup_logging()
    logging.info("日志系统在独立运行时初始化完成。")
