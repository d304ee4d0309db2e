import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from chat_core.config.settings import settings


# 携带模型输出或服务端响应原文的字段，脱敏时整体丢弃
CONTENT_FIELDS = ("payload", "body")


class JsonFormatter(logging.Formatter):
    """每条日志输出一行 JSON，extra={"extra": {...}} 中的字段平铺到顶层。"""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
            if settings.log_redact_content:
                for key in CONTENT_FIELDS:
                    payload.pop(key, None)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chat_core")
    logger.setLevel(logging.INFO)
    # 重复导入时不重复挂 handler
    if any(getattr(h, "_chat_core_handler", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chat.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    fh._chat_core_handler = True  # type: ignore[attr-defined]
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, **fields) -> None:
    """按结构化字段记一条日志。"""

    logger.log(level, message, extra={"extra": fields})


logger = setup_logger()
