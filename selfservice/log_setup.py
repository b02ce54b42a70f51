import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


class HumanFormatter(logging.Formatter):
    def format(self, record):
        timestamp = self.formatTime(record, self.datefmt)
        message = (
            f"[selfservice] {timestamp} {record.levelname.lower()} "
            f"{record.name} {record.getMessage()}"
        )
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(logfile: str, level: int = logging.INFO) -> logging.Logger:
    """패키지 최상위 'selfservice' 로거에 파일/콘솔 핸들러를 붙입니다."""
    logger = logging.getLogger("selfservice")
    logger.setLevel(level)

    if logger.handlers:
        return logger

    log_path = Path(logfile)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = HumanFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    return logger
