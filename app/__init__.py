from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS
from sqlalchemy import select

from actions.helpers import next_prefixed_id
from app.gateway import json_action, request_token
from app.middlewares.compression import init_compression
from auth import build_authenticator, invalidate_admin_cache
from config import Config
from db import SessionLocal, init_engine
from models import Admin, Employee
from passwords import hash_password
from services.notifier import Notifier, install_session_hooks
from services import storage
from services.storage import LocalDocumentStore
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, parse_json_body


DEMO_EMPLOYEES: list[dict[str, str]] = [
    {
        "employeeId": "6002056",
        "name": "S Sathish",
        "email": "sathish.s@tvscredit.com",
        "entityName": "TVSCSHIB",
        "department": "Operations",
        "designation": "Executive",
        "dateOfJoining": "2021-02-05",
        "dateOfLeaving": "2024-03-31",
        "exitReason": "Resigned",
        "fnfStatus": "Completed",
    },
    {
        "employeeId": "6002057",
        "name": "Rajesh Kumar",
        "email": "rajesh.kumar@tvscredit.com",
        "entityName": "TVSCSHIB",
        "department": "Finance",
        "designation": "Assistant Manager",
        "dateOfJoining": "2020-03-15",
        "dateOfLeaving": "2024-01-20",
        "exitReason": "Resigned",
        "fnfStatus": "Completed",
    },
]


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_demo_employees(db) -> int:
    now = iso_utc_now()
    added = 0
    for e in DEMO_EMPLOYEES:
        if db.execute(select(Employee.employeeId).where(Employee.employeeId == e["employeeId"])).scalar_one_or_none():
            continue
        db.add(Employee(**e, createdAt=now, updatedAt=now))
        added += 1
    return added


def _bootstrap_admin(db, cfg: Config) -> None:
    username = cfg.ADMIN_BOOTSTRAP_USERNAME
    if not username or not cfg.ADMIN_BOOTSTRAP_PASSWORD:
        return
    if db.execute(select(Admin.adminId).where(Admin.username == username)).scalar_one_or_none():
        return
    now = iso_utc_now()
    db.add(
        Admin(
            adminId=next_prefixed_id(
                db,
                counter_key="ADMIN",
                prefix="ADM-",
                existing_ids=db.execute(select(Admin.adminId)).scalars().all(),
            ),
            username=username,
            email=cfg.SUPPORT_EMAIL,
            fullName="Administrator",
            passwordHash=hash_password(cfg.ADMIN_BOOTSTRAP_PASSWORD),
            role="SUPER_ADMIN",
            permissionsCsv="",
            isActive=True,
            lastLoginAt="",
            createdAt=now,
            updatedAt=now,
        )
    )
    invalidate_admin_cache()
    logging.getLogger("auth").info("bootstrap admin created username=%s", username)


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL, pool_size=cfg.DB_POOL_SIZE, max_overflow=cfg.DB_MAX_OVERFLOW)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["MAX_CONTENT_LENGTH"] = (cfg.MAX_UPLOAD_MB + 1) * 1024 * 1024

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Session-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    install_session_hooks(SessionLocal)
    storage.install_session_hooks(SessionLocal)
    app.extensions["session_factory"] = SessionLocal
    app.extensions["authenticator"] = build_authenticator(cfg)
    app.extensions["notifier"] = Notifier(cfg, session_factory=SessionLocal, mode=cfg.NOTIFY_DISPATCH)
    app.extensions["documents"] = LocalDocumentStore(
        cfg.UPLOAD_DIR, max_bytes=cfg.MAX_UPLOAD_MB * 1024 * 1024, public_base_url=cfg.PUBLIC_BASE_URL
    )
    app.extensions["rate_limiter"] = SimpleRateLimiter()

    # Idempotent startup seeding.
    with SessionLocal() as db0:
        if cfg.SEED_DEMO_DATA:
            added = _seed_demo_employees(db0)
            if added:
                logging.getLogger("api").info("seeded %s demo employees", added)
        _bootstrap_admin(db0, cfg)
        db0.commit()

    from app.routes.api import api_bp
    from app.routes.core import core_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(api_bp)
    init_compression(app, enabled=cfg.ENABLE_COMPRESSION, min_size=cfg.COMPRESSION_MIN_SIZE, level=cfg.COMPRESSION_LEVEL)

    @app.before_request
    def _before():
        g.request_id = str(request.headers.get("X-Request-ID") or "").strip()[:64] or os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        return err("BAD_REQUEST", f"Max upload size is {cfg.MAX_UPLOAD_MB}MB", http_status=413)

    @app.post("/api")
    def api_route():
        raw = request.get_data(as_text=True)
        try:
            body = parse_json_body(raw)
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)
        data: Any = body.get("data") or {}
        return json_action(body.get("action"), data, token=request_token(body.get("token")))

    return app

