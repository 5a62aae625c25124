# notify.py - batch summary -> ops endpoint (signed, idempotent, retried)

from __future__ import annotations

import json
import time
import hmac
import base64
import hashlib
import random
import logging
import typing as t

import requests

log = logging.getLogger(__name__)


# ---- internal helpers ----
def _idem_key(action: str, shop: str, run_id: str) -> str:
    """Same action/shop/run always hashes to the same key so the receiver can de-dupe."""
    raw = f"{action}|{shop}|{run_id}"
    return "idem-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def sign_b64(secret: str, body_bytes: bytes) -> str:
    dig = hmac.new(secret.encode("utf-8"), body_bytes, hashlib.sha256).digest()
    return base64.b64encode(dig).decode("utf-8")


def _jitter_backoff(attempt: int, base: int = 2, cap: int = 8) -> float:
    # 2,4,8,8 ... + jitter
    delay = min(base ** attempt, cap)
    return delay + random.random()


def _has_failures(summary: dict) -> bool:
    if summary.get("success") is False:
        return True
    return bool(summary.get("errors"))


# ---- public API ----
def notify_summary(
    *,
    endpoint_url: t.Optional[str],
    shared_secret: t.Optional[str],
    action: str,
    shop: str,
    run_id: str,
    summary: dict,
    max_retries: int = 4,
    timeout_connect: int = 3,
    timeout_read: int = 5,
    session: t.Optional[requests.Session] = None,
    sleep: t.Callable[[float], None] = time.sleep,
) -> bool:
    """
    Returns True if the receiver accepted the event (or already had it),
    False when not configured, on a non-retryable error, or after all retries.
    Never raises: a lost notification must not fail the pass that produced it.
    """
    endpoint_url = (endpoint_url or "").strip()
    shared_secret = (shared_secret or "").strip()
    if not endpoint_url or not shared_secret:
        log.debug("notify skipped: endpoint or secret not configured")
        return False

    idem = _idem_key(action, shop, run_id)
    payload = {
        "idempotency_key": idem,
        "action": action,
        "shop": shop,
        "run_id": run_id,
        "has_failures": _has_failures(summary),
        "summary": summary,
    }
    body_bytes = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Signature": sign_b64(shared_secret, body_bytes),
    }
    http = session or requests

    last_err = None
    for attempt in range(1, max_retries + 1):
        try:
            resp = http.post(endpoint_url, data=body_bytes, headers=headers, timeout=(timeout_connect, timeout_read))
            if resp.status_code in (200, 201, 202):
                log.info("notify ok (attempt %d) action=%s shop=%s idem=%s", attempt, action, shop, idem)
                return True
            if resp.status_code == 409:
                log.info("notify duplicate (already received) idem=%s", idem)
                return True
            if resp.status_code >= 500 or resp.status_code == 429:
                last_err = f"{resp.status_code} {resp.text[:200]}"
            else:
                log.warning("notify non-retryable %s: %s", resp.status_code, resp.text[:200])
                return False
        except requests.RequestException as e:
            last_err = str(e)

        if attempt < max_retries:
            sleep(_jitter_backoff(attempt))

    log.error("notify failed after %d attempts: %s", max_retries, last_err)
    return False
