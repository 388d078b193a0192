from __future__ import annotations

import logging
import os
from typing import Literal, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field, field_validator

from config import WhatsAppConfig, whatsapp_config

from .credentials import FileCredentialStore, validate_key
from .delivery import WebhookDelivery
from .errors import (
    AlreadyExistsError,
    NotConnectedError,
    NotFoundError,
    ProvisioningExpiredError,
    SessionError,
)
from .manager import SessionLifecycleManager
from .provisioning import qr_data_url
from .transport import load_transport


logger = logging.getLogger("waworker.api")
ADMIN_TOKEN = (os.getenv("ADMIN_TOKEN") or "").strip()

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

MediaType = Literal["image", "document", "video", "audio"]


class CreateInstanceRequest(BaseModel):
    instance: str = Field(..., min_length=1, max_length=128)

    @field_validator("instance")
    @classmethod
    def _check_instance(cls, value: str) -> str:
        return validate_key(value)


class SendTextRequest(BaseModel):
    to: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class SendMediaRequest(BaseModel):
    to: str = Field(..., min_length=1)
    type: MediaType
    media: str = Field(..., min_length=1)
    caption: Optional[str] = None


class SendBase64Request(BaseModel):
    to: str = Field(..., min_length=1)
    type: MediaType
    base64: str = Field(..., min_length=1)
    caption: Optional[str] = None
    file_name: Optional[str] = None


def build_manager(cfg: WhatsAppConfig) -> SessionLifecycleManager:
    transport = load_transport(cfg.transport)
    delivery = WebhookDelivery(cfg.webhook_url, token=cfg.webhook_token)
    logger.info(
        "stage=webhook_url_resolved url=%s token_present=%s",
        cfg.webhook_url or "-",
        "true" if cfg.webhook_token else "false",
    )
    return SessionLifecycleManager(
        transport,
        FileCredentialStore(cfg.auth_dir),
        policy=cfg.policy(),
        delivery=delivery,
    )


def create_app(manager: Optional[SessionLifecycleManager] = None) -> FastAPI:
    if manager is None:
        manager = build_manager(whatsapp_config())

    app = FastAPI(title="waworker")
    app.state.session_manager = manager

    def _json(body: object, status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    def _error(status_code: int, message: str, detail: Optional[str] = None) -> JSONResponse:
        body = {"error": message}
        if detail:
            body["detail"] = detail
        return _json(body, status_code=status_code)

    def _enforce_admin(request: Request, route: str, *, key: str | None = None) -> JSONResponse | None:
        if not ADMIN_TOKEN:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != ADMIN_TOKEN:
            logger.warning("event=admin_token_invalid route=%s key=%s", route, key)
            return _error(401, "not_authorized")
        return None

    def _session_error(exc: SessionError) -> JSONResponse:
        if isinstance(exc, NotFoundError):
            return _error(404, exc.code, exc.detail)
        if isinstance(exc, ProvisioningExpiredError):
            return _error(410, exc.code)
        if isinstance(exc, (AlreadyExistsError, NotConnectedError)):
            return _error(409, exc.code, exc.detail)
        return _error(500, exc.code, exc.detail)

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post("/instance/create")
    async def create_instance(request: Request, payload: CreateInstanceRequest):
        unauthorized = _enforce_admin(request, "/instance/create", key=payload.instance)
        if unauthorized is not None:
            return unauthorized
        try:
            status = await manager.create(payload.instance)
        except SessionError as exc:
            return _session_error(exc)
        except Exception as exc:
            logger.exception("stage=create_failed key=%s", payload.instance)
            return _error(500, "create_failed", str(exc))
        return _json(status.to_payload())

    @app.get("/instance/fetchInstances")
    async def fetch_instances(request: Request):
        unauthorized = _enforce_admin(request, "/instance/fetchInstances")
        if unauthorized is not None:
            return unauthorized
        return _json({"instances": [status.to_payload() for status in manager.list_all()]})

    @app.get("/instance/connectionState/{key}")
    async def connection_state(request: Request, key: str):
        unauthorized = _enforce_admin(request, "/instance/connectionState", key=key)
        if unauthorized is not None:
            return unauthorized
        try:
            status = manager.status(key)
        except SessionError as exc:
            return _session_error(exc)
        return _json(status.to_payload())

    @app.delete("/instance/logout/{key}")
    async def logout_instance(request: Request, key: str):
        unauthorized = _enforce_admin(request, "/instance/logout", key=key)
        if unauthorized is not None:
            return unauthorized
        removed = await manager.remove(key)
        if not removed:
            return _error(404, "not_found")
        return _json({"ok": True, "instance": key})

    @app.get("/instance/connect/image/{key}")
    async def connect_image(request: Request, key: str):
        unauthorized = _enforce_admin(request, "/instance/connect/image", key=key)
        if unauthorized is not None:
            return unauthorized
        try:
            blob = manager.provisioning_png(key)
        except SessionError as exc:
            return _session_error(exc)
        return Response(content=blob, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.get("/instance/connect/{key}")
    async def connect_payload(request: Request, key: str):
        unauthorized = _enforce_admin(request, "/instance/connect", key=key)
        if unauthorized is not None:
            return unauthorized
        try:
            qr = manager.provisioning_payload(key)
            png = manager.provisioning_png(key)
        except SessionError as exc:
            return _session_error(exc)
        return _json({"instance": key, "qr": qr, "qr_png": qr_data_url(png)})

    async def _send(route: str, key: str, send) -> JSONResponse:
        try:
            jid = await send()
        except SessionError as exc:
            return _session_error(exc)
        except ValueError as exc:
            return _error(400, str(exc) or "invalid_request")
        except Exception as exc:
            logger.exception("stage=send_failed route=%s key=%s", route, key)
            return _error(500, "send_failed", str(exc))
        return _json({"ok": True, "instance": key, "to": jid})

    @app.post("/message/sendText/{key}")
    async def send_text(request: Request, key: str, payload: SendTextRequest):
        unauthorized = _enforce_admin(request, "/message/sendText", key=key)
        if unauthorized is not None:
            return unauthorized
        return await _send(
            "/message/sendText",
            key,
            lambda: manager.send_text(key, payload.to, payload.text),
        )

    @app.post("/message/sendMedia/{key}")
    async def send_media(request: Request, key: str, payload: SendMediaRequest):
        unauthorized = _enforce_admin(request, "/message/sendMedia", key=key)
        if unauthorized is not None:
            return unauthorized
        return await _send(
            "/message/sendMedia",
            key,
            lambda: manager.send_media(
                key, payload.to, payload.type, url=payload.media, caption=payload.caption
            ),
        )

    @app.post("/message/sendBase64/{key}")
    async def send_base64(request: Request, key: str, payload: SendBase64Request):
        unauthorized = _enforce_admin(request, "/message/sendBase64", key=key)
        if unauthorized is not None:
            return unauthorized
        return await _send(
            "/message/sendBase64",
            key,
            lambda: manager.send_media(
                key,
                payload.to,
                payload.type,
                data=payload.base64,
                caption=payload.caption,
                file_name=payload.file_name,
            ),
        )

    @app.get("/health")
    async def health():
        stats = manager.stats_snapshot()
        return _json({"ok": True, "sessions": stats, "total": sum(stats.values())})

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["build_manager", "create_app"]
