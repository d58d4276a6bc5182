import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Iterator
from chat_core.config.settings import settings


# 当前执行上下文绑定的字段（trace_id、conversation_id），由 JsonFormatter 合并进每条日志
_log_context: ContextVar[Dict[str, Any]] = ContextVar("chat_core_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """with 块内 chat_core 的所有日志都带上 fields，退出时恢复原上下文。"""

    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def bind_log_context(**fields: Any) -> None:
    """向当前上下文追加字段，随外层 log_context 退出一并清除。"""

    _log_context.set({**_log_context.get(), **fields})


class JsonFormatter(logging.Formatter):
    """一行一个 JSON 对象：固定字段，其次上下文字段，最后是调用方传入的 extra。"""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        payload.update(_log_context.get())
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chat_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chat.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()
