"""
support_rag/logging_setup.py：日志配置

为 support_rag 包的所有 logger 安装统一的 handler。

支持格式:
  - JSON: 每行一个 JSON 对象（适合 ELK / Loki）
  - Text: 人类可读的文本格式

输出目标:
  - stderr: 标准错误输出（默认）
  - file: 文件输出（支持 rotation）
"""
import json
import time
import logging
import logging.handlers
from typing import Optional

from .config import LoggingConfig

PACKAGE_LOGGER = "support_rag"

# LogRecord 的标准属性，其余视为 extra 字段
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message", "asctime",
}


def configure_logging(
    config: Optional[LoggingConfig] = None,
    logger_name: str = PACKAGE_LOGGER,
) -> logging.Logger:
    """
    配置包级 logger

    重复调用时会先清除已有 handler（避免重复输出）。

    Args:
        config: 日志配置（None 使用默认值）
        logger_name: Logger 名称

    Returns:
        配置后的 Logger
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)

    pkg_logger = logging.getLogger(logger_name)
    pkg_logger.setLevel(level)
    pkg_logger.propagate = False

    for handler in list(pkg_logger.handlers):
        handler.close()
    pkg_logger.handlers.clear()

    if config.format == "json":
        formatter: logging.Formatter = _JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    stderr_handler = logging.StreamHandler()
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(level)
    pkg_logger.addHandler(stderr_handler)

    if config.file:
        file_handler = logging.handlers.RotatingFileHandler(
            config.file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        pkg_logger.addHandler(file_handler)

    return pkg_logger


class _JsonFormatter(logging.Formatter):
    """JSON 格式化器"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": time.strftime(
                "%Y-%m-%dT%H:%M:%S", time.localtime(record.created)
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # extra 字段（如 degraded_reason、query）
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)
