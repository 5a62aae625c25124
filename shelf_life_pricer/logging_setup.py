from __future__ import annotations

import logging
import re

from flask import Flask

DEV_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
PROD_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TOKEN_PATTERN = re.compile(r"(shpat_|shpca_|shppa_)[A-Za-z0-9]+")
HEADER_PATTERN = re.compile(r"(X-Shopify-Access-Token|X-Run-Token|token)(['\"]?\s*[:=]\s*['\"]?)([^\s,;'\"]+)", re.IGNORECASE)


class TokenRedactionFilter(logging.Filter):
    """Keeps Admin API tokens and the run token out of log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        redacted = TOKEN_PATTERN.sub(r"\1[REDACTED]", msg)
        redacted = HEADER_PATTERN.sub(r"\1\2[REDACTED]", redacted)
        if redacted != msg:
            record.msg = redacted
            record.args = ()
        return True


def coerce_level(raw_level) -> int:
    if isinstance(raw_level, int):
        return raw_level
    if isinstance(raw_level, str):
        return getattr(logging, raw_level.strip().upper(), logging.INFO)
    return logging.INFO


def configure_logging(app: Flask, level_name: str = "INFO") -> None:
    level = coerce_level(level_name)
    root = logging.getLogger()
    root.setLevel(level)
    app.logger.setLevel(level)
    if not root.handlers:
        root.addHandler(logging.StreamHandler())

    if level > logging.DEBUG:
        for noisy in ("werkzeug", "urllib3", "sqlalchemy.engine"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    formatter = logging.Formatter(DEV_FORMAT if app.debug else PROD_FORMAT)
    for handler in list(root.handlers) + list(app.logger.handlers):
        handler.setFormatter(formatter)
        if not any(isinstance(f, TokenRedactionFilter) for f in handler.filters):
            handler.addFilter(TokenRedactionFilter())
