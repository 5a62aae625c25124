# -*- coding: utf-8 -*-

"""
Settings for the shelf-life pricer.

Values come from environment variables; an optional JSON file (path in
SHELF_PRICER_CONFIG, default ./config.json) seeds them first so a deploy can
keep secrets in a mounted file. Environment always wins over the file.

Example config.json:
{
  "shop_tokens": {"your-shop.myshopify.com": "shpat_xxx"},
  "api_version": "2024-10",
  "database_url": "sqlite:///./data/shelf_life.db",
  "web_trigger_token": "CHANGE_ME_LONG_RANDOM",
  "rate_limit_per_sec": 2.0,
  "rate_limit_burst": 4,
  "request_timeout_sec": 30,
  "sync_page_size": 100,
  "sync_max_pages": 25,
  "metafield_namespace": "alpha_dog",
  "state_dir": "./data/state",
  "notify_url": null,
  "notify_secret": null,
  "log_level": "INFO"
}
"""

from __future__ import annotations

import os
import json
import pathlib
import typing as t
from dataclasses import dataclass, field

from .errors import ConfigError

BASE_DIR = pathlib.Path.cwd()


def env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return v if v is not None and str(v).strip() != "" else default


def parse_shop_tokens(raw: str) -> dict[str, str]:
    """'a.myshopify.com=tok1,b.myshopify.com=tok2' -> {domain: token}"""
    out: dict[str, str] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ConfigError(f"SHOP_TOKENS entry must look like shop=token, got: {part!r}")
        shop, token = part.split("=", 1)
        shop, token = shop.strip().lower(), token.strip()
        if not shop or not token:
            raise ConfigError(f"SHOP_TOKENS entry has an empty shop or token: {part!r}")
        out[shop] = token
    return out


@dataclass
class Settings:
    shop_tokens: dict[str, str] = field(default_factory=dict)
    api_version: str = "2024-10"
    database_url: str = "sqlite:///" + str(BASE_DIR / "data" / "shelf_life.db")
    web_trigger_token: str = ""
    rate_limit_per_sec: float = 2.0
    rate_limit_burst: int = 4
    request_timeout_sec: int = 30
    throttle_max_attempts: int = 5
    sync_page_size: int = 100
    sync_max_pages: int = 25
    metafield_namespace: str = "alpha_dog"
    default_currency: str = "TWD"
    csv_default_encoding: str = "big5"
    state_dir: str = str(BASE_DIR / "data" / "state")
    notify_url: t.Optional[str] = None
    notify_secret: t.Optional[str] = None
    log_level: str = "INFO"

    def token_for(self, shop: str) -> str:
        tok = self.shop_tokens.get((shop or "").strip().lower())
        if not tok:
            raise ConfigError(f"No access token configured for shop: {shop}")
        return tok

    def validate(self) -> "Settings":
        if not self.shop_tokens:
            raise ConfigError("At least one shop must be configured (SHOP_TOKENS or shop_tokens in config.json)")
        if not self.web_trigger_token:
            raise ConfigError("WEB_TRIGGER_TOKEN is required")
        if not 1 <= self.sync_page_size <= 250:
            raise ConfigError("SYNC_PAGE_SIZE must be between 1 and 250")
        if self.rate_limit_per_sec <= 0 or self.rate_limit_burst < 1:
            raise ConfigError("RATE_LIMIT_PER_SEC must be > 0 and RATE_LIMIT_BURST >= 1")
        return self


def _load_file(path: pathlib.Path) -> dict:
    if not path.exists():
        return {}
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
    except Exception as e:
        raise ConfigError(f"Failed to parse {path}: {e}")
    if not isinstance(cfg, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return cfg


def load_settings(config_path: t.Optional[str] = None) -> Settings:
    path = pathlib.Path(config_path or env("SHELF_PRICER_CONFIG", str(BASE_DIR / "config.json")))
    cfg = _load_file(path)
    s = Settings()

    # file first
    for k, v in cfg.items():
        if hasattr(s, k) and v is not None:
            setattr(s, k, v)
    if isinstance(cfg.get("shop_tokens"), dict):
        s.shop_tokens = {k.strip().lower(): str(v).strip() for k, v in cfg["shop_tokens"].items()}

    # env overrides
    if env("SHOP_TOKENS"):
        s.shop_tokens = parse_shop_tokens(env("SHOP_TOKENS"))
    s.api_version = env("API_VERSION", s.api_version).strip()
    s.database_url = env("DATABASE_URL", s.database_url).strip()
    s.web_trigger_token = env("WEB_TRIGGER_TOKEN", s.web_trigger_token).strip()
    s.metafield_namespace = env("MF_NAMESPACE", s.metafield_namespace).strip()
    s.default_currency = env("DEFAULT_CURRENCY", s.default_currency).strip()
    s.csv_default_encoding = env("CSV_DEFAULT_ENCODING", s.csv_default_encoding).strip()
    s.state_dir = env("STATE_DIR", s.state_dir).strip()
    s.notify_url = env("NOTIFY_URL", s.notify_url or "").strip() or None
    s.notify_secret = env("NOTIFY_SECRET", s.notify_secret or "").strip() or None
    s.log_level = env("LOG_LEVEL", s.log_level).strip()
    try:
        s.rate_limit_per_sec = float(env("RATE_LIMIT_PER_SEC", str(s.rate_limit_per_sec)))
        s.rate_limit_burst = int(env("RATE_LIMIT_BURST", str(s.rate_limit_burst)))
        s.request_timeout_sec = int(env("REQUEST_TIMEOUT_SEC", str(s.request_timeout_sec)))
        s.throttle_max_attempts = int(env("THROTTLE_MAX_ATTEMPTS", str(s.throttle_max_attempts)))
        s.sync_page_size = int(env("SYNC_PAGE_SIZE", str(s.sync_page_size)))
        s.sync_max_pages = int(env("SYNC_MAX_PAGES", str(s.sync_max_pages)))
    except ValueError as e:
        raise ConfigError(f"Invalid numeric setting: {e}")
    return s.validate()
