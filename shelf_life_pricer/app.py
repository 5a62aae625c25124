# -*- coding: utf-8 -*-

"""
Shelf-Life Pricer - Web App (Flask)

Endpoints (admin routes need ?token=WEB_TRIGGER_TOKEN or an X-Run-Token header;
``shop`` comes from the JSON body, the form or the query string):
- GET  /                              : Status page (shops, limiter, last run summaries)
- GET  /health                        : Liveness
- POST /shelf-life/upload             : multipart ``file`` (+ optional ``encoding``) -> upsert batches
- GET  /shelf-life/items              : items with their latest price change
- GET  /shelf-life/expiring?days=30   : batches expiring within N days (with stock)
- POST /shelf-life/sync               : match items to Shopify variants by SKU
- POST /shelf-life/discounts/apply    : expiration-driven automatic discounts
- POST /shelf-life/discounts/revert   : undo every active automatic discount
- POST /shelf-life/price              : manual price for one variant
- DELETE /shelf-life/items/<id>, POST /shelf-life/items/bulk-delete, POST /shelf-life/items/delete-all
- GET  /shelf-life/price-changes      : ledger, newest first
- GET  /api/expiration-date           : storefront read, no token
- GET  /api/daily-discounts?max=4&sort=newest : storefront list of live daily discounts, no token
- POST /daily-discounts/run | /revert | /reset, GET /daily-discounts/logs

Timer-driven runs use the CLI instead of HTTP:
  shelf-life-pricer sync|apply-discounts|revert-discounts|daily-discounts [--shop ...]
"""

from __future__ import annotations

import os
import hmac
import json
import html
import time
import random
import typing as t
from dataclasses import dataclass, field

import click
from flask import Flask, Response, abort, current_app, jsonify, request
from flask.cli import FlaskGroup

from . import __version__
from .config import Settings, load_settings
from .csv_ingest import ingest_csv
from .daily_discounts import DEFAULT_COUNT, DailyDiscountService, storefront_products
from .db import Database
from .errors import ShelfLifeError, ValidationError
from .ledger import expiration_data_for_variant, expiring_items, items_with_latest_change, price_history
from .logging_setup import configure_logging
from .notify import notify_summary
from .pricing import ExpirationPricingEngine
from .ratelimit import RateLimiter
from .repositories import ShelfLifeRepository
from .shopify import ShopifyClient
from .state import RunState, now_utc_iso
from .sync import reconcile

EXTENSION_KEY = "shelf_life_pricer"


@dataclass
class Services:
    settings: Settings
    db: Database
    state: RunState
    client_factory: t.Optional[t.Callable[[str], ShopifyClient]] = None
    rng: t.Optional[random.Random] = None
    limiters: dict[str, RateLimiter] = field(default_factory=dict)

    def limiter(self, shop: str) -> RateLimiter:
        # Shopify's bucket is per shop, so is ours
        if shop not in self.limiters:
            self.limiters[shop] = RateLimiter(self.settings.rate_limit_per_sec, self.settings.rate_limit_burst)
        return self.limiters[shop]

    def client(self, shop: str) -> ShopifyClient:
        if self.client_factory is not None:
            return self.client_factory(shop)
        s = self.settings
        return ShopifyClient(
            shop,
            s.token_for(shop),
            s.api_version,
            self.limiter(shop),
            timeout=s.request_timeout_sec,
            max_attempts=s.throttle_max_attempts,
        )

    def engine(self, shop: str) -> ExpirationPricingEngine:
        return ExpirationPricingEngine(self.db, self.client(shop), default_currency=self.settings.default_currency)

    def daily(self, shop: str) -> DailyDiscountService:
        return DailyDiscountService(
            self.db,
            self.client(shop),
            rng=self.rng,
            default_currency=self.settings.default_currency,
            page_size=self.settings.sync_page_size,
        )

    def sync(self, shop: str, only_pending: bool = False) -> dict:
        s = self.settings
        return reconcile(
            self.db,
            self.client(shop),
            shop,
            page_size=s.sync_page_size,
            max_pages=s.sync_max_pages,
            namespace=s.metafield_namespace,
            default_currency=s.default_currency,
            only_pending=only_pending,
        )

    def run(self, action: str, shop: str, fn: t.Callable[[], dict]) -> dict:
        """One batch pass: per-shop lock, persisted summary, ops notification."""
        started = now_utc_iso()
        t0 = time.time()
        with self.state.run_lock(shop, action):
            summary = fn()
        summary_doc = dict(summary)
        summary_doc["duration_sec"] = round(time.time() - t0, 2)
        self.state.record(action, shop, summary_doc, started_utc=started)
        notify_summary(
            endpoint_url=self.settings.notify_url,
            shared_secret=self.settings.notify_secret,
            action=action,
            shop=shop,
            run_id=started,
            summary=summary_doc,
        )
        return summary


def _svc() -> Services:
    return current_app.extensions[EXTENSION_KEY]


# ----------------------------
# Request helpers
# ----------------------------
def _authorized(req) -> bool:
    # token in query string or header
    qtok = req.args.get("token")
    htok = req.headers.get("X-Run-Token")
    token = qtok or htok or ""
    return hmac.compare_digest(token, _svc().settings.web_trigger_token)


def _payload(req) -> dict:
    data = req.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return req.form.to_dict() if req.form else {}


def _shop(req) -> str:
    shop = (_payload(req).get("shop") or req.args.get("shop") or "").strip().lower()
    if not shop:
        raise ValidationError("shop is required")
    if shop not in _svc().settings.shop_tokens:
        raise ValidationError(f"Unknown shop: {shop}")
    return shop


def _require_token() -> None:
    if not _authorized(request):
        abort(401)


def _int_arg(value, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _status(success: bool, errors=None, warnings=None) -> str:
    if not success:
        return "error"
    return "warning" if errors or warnings else "success"


def _user(data: dict) -> dict:
    return {"user_id": data.get("userId"), "user_name": data.get("userName")}


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: t.Optional[Settings] = None,
    database: t.Optional[Database] = None,
    client_factory: t.Optional[t.Callable[[str], ShopifyClient]] = None,
    rng: t.Optional[random.Random] = None,
) -> Flask:
    settings = settings or load_settings()
    app = Flask(__name__)
    configure_logging(app, settings.log_level)

    db = database or Database(settings.database_url)
    db.create_all()
    state = RunState(settings.state_dir)
    app.extensions[EXTENSION_KEY] = Services(settings, db, state, client_factory=client_factory, rng=rng)

    @app.errorhandler(ShelfLifeError)
    def _handle_domain_error(e: ShelfLifeError):
        if e.http_status >= 500:
            app.logger.error("%s: %s", type(e).__name__, e)
        return jsonify({"status": "error", "message": str(e)}), e.http_status

    register_routes(app)
    register_cli(app)
    return app


def register_routes(app: Flask) -> None:
    @app.route("/", methods=["GET"])
    def status_page():
        svc = _svc()
        last = svc.state.all_last()
        cfg = {
            "shops": sorted(svc.settings.shop_tokens),
            "api_version": svc.settings.api_version,
            "sync_page_size": svc.settings.sync_page_size,
            "sync_max_pages": svc.settings.sync_max_pages,
            "metafield_namespace": svc.settings.metafield_namespace,
            "notify": bool(svc.settings.notify_url),
        }
        limiters = {shop: lim.stats() for shop, lim in svc.limiters.items()}
        cards = []
        for action, doc in last.items():
            body = html.escape(json.dumps(doc, indent=2, ensure_ascii=False)) if doc else "No runs yet."
            cards.append(f"""
      <div class="card">
        <h2>Last {html.escape(action)}</h2>
        <pre>{body}</pre>
      </div>""")
        cards_html = "".join(cards)
        limiter_text = html.escape(json.dumps(limiters, indent=2)) if limiters else "No Shopify calls yet."
        page = f"""
    <html>
    <head>
      <meta charset="utf-8" />
      <title>Shelf-Life Pricer</title>
      <style>
        body {{ font-family: system-ui, -apple-system, Segoe UI, Roboto, Arial, sans-serif; padding: 20px; color: #eee; background:#111; }}
        .card {{ background:#1b1b1b; border:1px solid #333; border-radius:12px; padding:16px; margin-bottom:20px; }}
        pre {{ white-space: pre-wrap; word-wrap: break-word; background:#0c0c0c; padding:12px; border-radius:8px; border:1px solid #222; }}
        code {{ color:#ddd; }}
      </style>
    </head>
    <body>
      <h1>Shelf-Life Pricer <small>{__version__}</small></h1>

      <div class="card">
        <h2>Config</h2>
        <pre>{html.escape(json.dumps(cfg, indent=2))}</pre>
      </div>

      <div class="card">
        <h2>Rate limiter</h2>
        <pre>{limiter_text}</pre>
      </div>
      {cards_html}

      <div class="card">
        <h2>Manual Trigger</h2>
        <p>POST to <code>/shelf-life/sync?token=...&amp;shop=...</code> (or use the CLI)</p>
      </div>
    </body>
    </html>
    """
        return Response(page, mimetype="text/html")

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"ok": True, "version": __version__})

    # ---- shelf-life ----
    @app.route("/shelf-life/upload", methods=["POST"])
    def upload():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        f = request.files.get("file")
        if f is None:
            raise ValidationError("No file uploaded")
        started = now_utc_iso()
        result = ingest_csv(
            svc.db,
            shop,
            f.read(),
            encoding=request.form.get("encoding") or request.args.get("encoding"),
            default_encoding=svc.settings.csv_default_encoding,
        )
        svc.state.record("upload", shop, result, started_utc=started)
        if result["errors"]:
            message = f"File processed with {len(result['errors'])} errors"
        else:
            message = f"File processed successfully. {result['savedCount']} items saved."
        return jsonify({
            "status": _status(True, result["errors"]),
            "message": message,
            "savedCount": result["savedCount"],
            "errors": result["errors"],
        })

    @app.route("/shelf-life/items", methods=["GET"])
    def list_items():
        _require_token()
        return jsonify({"items": items_with_latest_change(_svc().db, _shop(request))})

    @app.route("/shelf-life/expiring", methods=["GET"])
    def list_expiring():
        _require_token()
        days = _int_arg(request.args.get("days"), "days", 30)
        return jsonify({"days": days, "items": expiring_items(_svc().db, _shop(request), days)})

    @app.route("/shelf-life/sync", methods=["POST"])
    def sync_now():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        only_pending = str(_payload(request).get("onlyPending") or request.args.get("onlyPending") or "").lower() in ("1", "true", "yes")
        result = svc.run("sync", shop, lambda: svc.sync(shop, only_pending=only_pending))
        return jsonify({"status": _status(result["success"]), "message": result["message"], "syncResult": result})

    @app.route("/shelf-life/discounts/apply", methods=["POST"])
    def apply_discounts():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        user = _user(_payload(request))
        result = svc.run("apply_discounts", shop, lambda: svc.engine(shop).apply_automatic_discounts(shop, **user))
        return jsonify({
            "status": _status(result["success"], result["errors"], result["warnings"]),
            "message": result["message"],
            "discountResult": result,
        })

    @app.route("/shelf-life/discounts/revert", methods=["POST"])
    def revert_discounts():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        user = _user(_payload(request))
        result = svc.run("revert_discounts", shop, lambda: svc.engine(shop).revert_automatic_discounts(shop, **user))
        return jsonify({
            "status": _status(result["success"], result["errors"], result["warnings"]),
            "message": result["message"],
            "revertDiscountResult": result,
        })

    @app.route("/shelf-life/price", methods=["POST"])
    def update_price():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        data = _payload(request)
        result = svc.engine(shop).update_single_price(
            shop,
            (data.get("variantId") or "").strip(),
            data.get("newPrice"),
            data.get("newCompareAtPrice"),
            **_user(data),
        )
        return jsonify(result)

    @app.route("/shelf-life/items/<int:item_id>", methods=["DELETE"])
    def delete_item(item_id: int):
        _require_token()
        svc = _svc()
        shop = _shop(request)
        with svc.db.session() as s:
            ShelfLifeRepository(s).delete(shop, item_id)
        return jsonify({"status": "success", "message": "Item deleted successfully"})

    @app.route("/shelf-life/items/bulk-delete", methods=["POST"])
    def bulk_delete_items():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        ids = _payload(request).get("ids")
        if isinstance(ids, str):
            ids = [x for x in ids.split(",") if x.strip()]
        if not ids or not isinstance(ids, list):
            raise ValidationError("ids must be a non-empty list")
        ids = [_int_arg(x, "ids", 0) for x in ids]
        with svc.db.session() as s:
            n = ShelfLifeRepository(s).bulk_delete(shop, ids)
        return jsonify({"status": "success", "message": f"{n} items deleted successfully", "deletedCount": n})

    @app.route("/shelf-life/items/delete-all", methods=["POST"])
    def delete_all_items():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        with svc.db.session() as s:
            n = ShelfLifeRepository(s).delete_all(shop)
        return jsonify({"status": "success", "message": f"All {n} items deleted successfully", "deletedCount": n})

    @app.route("/shelf-life/price-changes", methods=["GET"])
    def list_price_changes():
        _require_token()
        limit = _int_arg(request.args.get("limit"), "limit", 0) or None
        return jsonify({"priceChanges": price_history(_svc().db, _shop(request), limit)})

    # ---- storefront ----
    @app.route("/api/expiration-date", methods=["GET"])
    def expiration_date():
        shop = (request.args.get("shop") or "").strip().lower()
        variant_id = (request.args.get("variantId") or "").strip()
        if not shop or not variant_id:
            return jsonify({"success": False, "message": "Missing required parameters: shop and variantId"}), 400
        data = expiration_data_for_variant(_svc().db, shop, variant_id)
        if not data:
            return jsonify({"success": False, "message": "No expiration data found for this product"})
        return jsonify({"success": True, "expirationData": data})

    @app.route("/api/daily-discounts", methods=["GET"])
    def storefront_daily_discounts():
        shop = (request.args.get("shop") or "").strip().lower()
        if not shop:
            return jsonify({"status": "error", "message": "Missing required parameter: shop"}), 400
        limit = _int_arg(request.args.get("max"), "max", 4)
        products = storefront_products(_svc().db, shop, limit=limit, sort=request.args.get("sort") or "newest")
        resp = jsonify({"status": "success", "products": products})
        resp.headers["Access-Control-Allow-Origin"] = "*"
        resp.headers["Cache-Control"] = "max-age=300"
        return resp

    # ---- daily discounts ----
    @app.route("/daily-discounts/run", methods=["POST"])
    def daily_run():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        data = _payload(request)
        count = _int_arg(data.get("count", request.args.get("count")), "count", DEFAULT_COUNT)
        result = svc.run("daily_discounts", shop, lambda: svc.daily(shop).run(shop, count=count, user_id=data.get("userId")))
        errors = result["revert"]["errors"] + result["apply"]["errors"]
        warnings = result["revert"]["warnings"] + result["apply"]["warnings"]
        return jsonify({
            "status": _status(True, errors, warnings),
            "message": f"Reverted {result['revert']['revertedCount']} and applied {result['apply']['appliedCount']} daily discounts",
            "result": result,
        })

    @app.route("/daily-discounts/revert", methods=["POST"])
    def daily_revert():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        data = _payload(request)
        result = svc.run("daily_discounts", shop, lambda: svc.daily(shop).revert(shop, user_id=data.get("userId")))
        return jsonify({
            "status": _status(True, result["errors"], result["warnings"]),
            "message": f"Reverted {result['revertedCount']} of {result['totalActive']} daily discounts",
            "result": result,
        })

    @app.route("/daily-discounts/logs", methods=["GET"])
    def daily_logs():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        limit = _int_arg(request.args.get("limit"), "limit", 50)
        return jsonify(svc.daily(shop).logs(shop, limit=limit))

    @app.route("/daily-discounts/reset", methods=["POST"])
    def daily_reset():
        _require_token()
        svc = _svc()
        shop = _shop(request)
        n = svc.daily(shop).reset(shop, _payload(request).get("confirm"))
        return jsonify({"status": "success", "message": f"Deleted {n} daily discount log entries", "deletedCount": n})


# ----------------------------
# CLI (cron hooks)
# ----------------------------
def register_cli(app: Flask) -> None:
    def _shops(shop: t.Optional[str]) -> list[str]:
        svc = _svc()
        if shop:
            shop = shop.strip().lower()
            if shop not in svc.settings.shop_tokens:
                raise click.BadParameter(f"unknown shop {shop}", param_hint="--shop")
            return [shop]
        return sorted(svc.settings.shop_tokens)

    def _run(shop: str, action: str, fn: t.Callable[[], dict]) -> None:
        try:
            result = _svc().run(action, shop, fn)
        except ShelfLifeError as e:
            raise click.ClickException(f"{shop}: {e}")
        click.echo(json.dumps({"shop": shop, "result": result}, indent=2, ensure_ascii=False, default=str))

    shop_option = click.option("--shop", default=None, help="Shop domain; all configured shops when omitted.")

    @app.cli.command("init-db")
    def init_db_cmd():
        """Create missing tables."""
        _svc().db.create_all()
        click.echo("database ready")

    @app.cli.command("sync")
    @shop_option
    @click.option("--only-pending", is_flag=True, help="Skip items that are already matched.")
    def sync_cmd(shop, only_pending):
        """Match shelf-life items to Shopify variants."""
        svc = _svc()
        for s in _shops(shop):
            _run(s, "sync", lambda: svc.sync(s, only_pending=only_pending))

    @app.cli.command("apply-discounts")
    @shop_option
    def apply_cmd(shop):
        """Apply expiration-driven discounts."""
        svc = _svc()
        for s in _shops(shop):
            _run(s, "apply_discounts", lambda: svc.engine(s).apply_automatic_discounts(s, user_name="cli"))

    @app.cli.command("revert-discounts")
    @shop_option
    def revert_cmd(shop):
        """Revert every active automatic discount."""
        svc = _svc()
        for s in _shops(shop):
            _run(s, "revert_discounts", lambda: svc.engine(s).revert_automatic_discounts(s, user_name="cli"))

    @app.cli.command("daily-discounts")
    @shop_option
    @click.option("--count", default=DEFAULT_COUNT, show_default=True, type=int)
    @click.option("--revert-only", is_flag=True, help="Only revert the previous picks.")
    def daily_cmd(shop, count, revert_only):
        """Rotate the random daily discounts."""
        svc = _svc()
        for s in _shops(shop):
            if revert_only:
                _run(s, "daily_discounts", lambda: svc.daily(s).revert(s))
            else:
                _run(s, "daily_discounts", lambda: svc.daily(s).run(s, count=count))


def main() -> None:
    cli = FlaskGroup(create_app=create_app, help="Shelf-life pricer commands.")
    cli.main()


# ----------------------------
# Entry
# ----------------------------
if __name__ == "__main__":
    # Local dev: python -m shelf_life_pricer.app
    port = int(os.environ.get("PORT", "8000"))
    create_app().run(host="0.0.0.0", port=port)
