"""
Run state on disk: the last summary of each action (shown on the status page)
and a per-shop lockfile so two batch passes never overlap for one shop.
"""

from __future__ import annotations

import os
import json
import pathlib
import typing as t
from contextlib import contextmanager
from datetime import datetime, timezone

from .errors import RunInProgressError

ACTIONS = ("upload", "sync", "apply_discounts", "revert_discounts", "daily_discounts")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def safe_write_json(path: pathlib.Path, data: dict) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
    tmp.replace(path)


def _slug(shop: str) -> str:
    return "".join(c if c.isalnum() or c in "-." else "_" for c in (shop or "unknown"))


class RunState:
    def __init__(self, state_dir: str | pathlib.Path):
        self.dir = pathlib.Path(state_dir)

    def ensure_dirs(self) -> None:
        self.dir.mkdir(parents=True, exist_ok=True)

    # ---- summaries ----
    def summary_path(self, action: str) -> pathlib.Path:
        return self.dir / f"last_{action}.json"

    def record(self, action: str, shop: str, summary: dict, started_utc: t.Optional[str] = None) -> dict:
        self.ensure_dirs()
        doc = {
            "action": action,
            "shop": shop,
            "start_utc": started_utc or now_utc_iso(),
            "end_utc": now_utc_iso(),
            "summary": summary,
        }
        safe_write_json(self.summary_path(action), doc)
        return doc

    def last(self, action: str) -> t.Optional[dict]:
        path = self.summary_path(action)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {"message": f"unreadable state file {path.name}"}

    def all_last(self) -> dict[str, t.Optional[dict]]:
        return {a: self.last(a) for a in ACTIONS}

    # ---- lock ----
    def lock_path(self, shop: str) -> pathlib.Path:
        return self.dir / f"run_{_slug(shop)}.lock"

    def locked(self, shop: str) -> bool:
        return self.lock_path(shop).exists()

    @contextmanager
    def run_lock(self, shop: str, action: str):
        self.ensure_dirs()
        path = self.lock_path(shop)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise RunInProgressError(f"Another run is in progress for {shop} (lockfile present)")
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps({"pid": os.getpid(), "action": action, "start": now_utc_iso()}))
        try:
            yield
        finally:
            path.unlink(missing_ok=True)
