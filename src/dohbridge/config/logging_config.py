from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}


def parse_level(name: Any, default: int = logging.INFO) -> int:
    """Map a level name such as 'warn' or 'debug' to a logging constant."""
    return _LEVELS.get(str(name).lower(), default)


class SyslogFormatter(logging.Formatter):
    """Syslog lines without timestamps (syslog adds its own), prefixed by a tag."""

    def __init__(self, tag: str = "dohbridge") -> None:
        super().__init__()
        self.tag = tag

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return f"{self.tag}: {record.level_tag} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Bracketed lowercase level tags and UTC ISO-8601 timestamps."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


def _as_dict(cfg: Union[None, Mapping[str, Any], Any]) -> Dict[str, Any]:
    if cfg is None:
        return {}
    if isinstance(cfg, Mapping):
        return dict(cfg)
    for attr in ("model_dump", "dict"):
        fn = getattr(cfg, attr, None)
        if callable(fn):
            return dict(fn())
    raise TypeError(f"unsupported logging config type: {type(cfg).__name__}")


def init_logging(cfg: Optional[Any]) -> None:
    """
    Initialize the root logger from the ``logging`` config section.

    Args:
        cfg: LoggingConfig model or mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of a log file; parent directories are created
            - syslog: True, or a dict with address / facility / tag

    Example config:
        logging:
          level: debug
          file: ./dohbridge.log
          syslog: {address: /dev/log, tag: dohbridge}
    """
    opts = _as_dict(cfg)

    level = parse_level(opts.get("level", "info"))
    formatter = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    if opts.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = opts.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    syslog_cfg = opts.get("syslog")
    if syslog_cfg:
        sys_opts = syslog_cfg if isinstance(syslog_cfg, dict) else {}
        address = sys_opts.get("address", "/dev/log")
        if isinstance(address, (list, tuple)):
            address = (str(address[0]), int(address[1]))
        facility = getattr(
            logging.handlers.SysLogHandler,
            f"LOG_{str(sys_opts.get('facility', 'USER')).upper()}",
            logging.handlers.SysLogHandler.LOG_USER,
        )
        try:
            syslog_handler = logging.handlers.SysLogHandler(
                address=address, facility=facility
            )
        except (OSError, ValueError) as e:  # pragma: no cover - environment specific
            root.warning("Failed to configure syslog: %s", e)
        else:
            syslog_handler.setFormatter(
                SyslogFormatter(tag=str(sys_opts.get("tag", "dohbridge")))
            )
            root.addHandler(syslog_handler)

    logging.captureWarnings(True)
