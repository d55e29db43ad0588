#!/usr/bin/env python3
"""
KeyGate FastAPI Service

Public endpoints validate access keys and serve Lua loaders; operator
endpoints (X-Admin-Token) manage keys, payloads, usage ledgers and the
security log.
"""

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import AliasChoices, BaseModel, Field
from typing import Any, Dict, Mapping, Optional, Union
from datetime import datetime, timezone
import logging

from keygate.config import load_settings
from keygate.errors import ErrorKind, KeyGateError, MESSAGES, status_for
from keygate.keygate_service import KeyGate

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "X-Content-Type-Options": "nosniff",
}


# Pydantic models for request validation
class ValidateRequest(BaseModel):
    key: Optional[str] = Field(None, description="Access key")
    hwid: Optional[str] = Field(None, description="Device fingerprint")
    payload_hash: Optional[str] = Field(
        None, validation_alias=AliasChoices("payload_hash", "scriptHash"),
        description="Hash of the payload to release")
    identity: Optional[str] = Field(
        None, validation_alias=AliasChoices("identity", "username", "robloxUsername"),
        description="Client identity, e.g. the player name")

    class Config:
        json_schema_extra = {
            "example": {
                "key": "KG-1A2B-3C4D-5E6F-7A8B",
                "hwid": "8F0C2A9E-1B3D-4E5F-A6B7-C8D9E0F1A2B3",
                "payload_hash": "0f3a9c1e5b7d2f4a6c8e0b1d3f5a7c9e",
                "identity": "builderman"
            }
        }


class CreateKeyRequest(BaseModel):
    note: str = Field("", description="Operator-only note")
    bound_payload_hash: Optional[str] = Field(
        None, validation_alias=AliasChoices("bound_payload_hash", "scriptHash"),
        description="Restrict the key to one payload")
    expires_at: Optional[Union[int, float, str]] = Field(
        None, validation_alias=AliasChoices("expires_at", "expiresAt"),
        description="Expiry as ISO-8601 or epoch seconds/milliseconds")
    max_uses: Optional[int] = Field(
        None, validation_alias=AliasChoices("max_uses", "maxUses"),
        description="Maximum successful validations")

    class Config:
        json_schema_extra = {
            "example": {
                "note": "Customer #1042",
                "bound_payload_hash": "0f3a9c1e5b7d2f4a6c8e0b1d3f5a7c9e",
                "expires_at": "2026-12-31T23:59:59Z",
                "max_uses": 100
            }
        }


class UpdateKeyRequest(BaseModel):
    note: Optional[str] = None
    bound_payload_hash: Optional[str] = Field(
        None, validation_alias=AliasChoices("bound_payload_hash", "scriptHash"))
    expires_at: Optional[Union[int, float, str]] = Field(
        None, validation_alias=AliasChoices("expires_at", "expiresAt"))
    max_uses: Optional[int] = Field(None, validation_alias=AliasChoices("max_uses", "maxUses"))
    blacklisted: Optional[bool] = None
    reset_device: bool = Field(False, validation_alias=AliasChoices("reset_device", "resetHwid"))


class SavePayloadRequest(BaseModel):
    content: str = Field(..., description="Script source, or a URL for indirection payloads")
    label: Optional[str] = Field(None, description="Display name")
    kind: str = Field("inline", description="'inline' or 'indirection'")
    payload_hash: Optional[str] = Field(
        None, validation_alias=AliasChoices("payload_hash", "hash"),
        description="Explicit hash; derived from the content when omitted")

    class Config:
        json_schema_extra = {
            "example": {
                "content": "print('hello from a protected script')",
                "label": "Hello World",
                "kind": "inline"
            }
        }


class UpdatePayloadRequest(BaseModel):
    label: Optional[str] = None
    content: Optional[str] = None
    kind: Optional[str] = None


def client_address(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_keygate(request: Request) -> KeyGate:
    keygate = getattr(request.app.state, "keygate", None)
    if keygate is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return keygate


async def require_operator(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    keygate: KeyGate = Depends(get_keygate),
) -> KeyGate:
    """Authenticate the operator credential and return the service"""
    keygate.authenticate_operator(x_admin_token, client_address(request))
    return keygate


def _validation_params(params: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "key": params.get("key"),
        "device_fingerprint": params.get("hwid"),
        "payload_hash": params.get("payload_hash") or params.get("scriptHash"),
        "identity": params.get("identity") or params.get("username") or params.get("robloxUsername"),
    }


def _error_response(kind: ErrorKind, status_code: int, message: Optional[str] = None,
                    retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": kind.value, "message": message or MESSAGES[kind]},
        headers=headers,
    )


def create_app(keygate: Optional[KeyGate] = None) -> FastAPI:
    """
    Build the application

    Args:
        keygate: Service to serve. If None, one is built from the environment
            at startup and a missing operator credential aborts startup.
    """
    app = FastAPI(
        title="KeyGate API",
        description="Key-gated delivery of protected scripts",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.state.keygate = keygate

    # Startup event
    @app.on_event("startup")
    async def startup_event():
        """Build KeyGate from the environment unless one was injected"""
        if app.state.keygate is None:
            settings = load_settings()
            logging.getLogger().setLevel(settings.log_level)
            app.state.keygate = KeyGate(settings)
        logger.info("KeyGate API service started successfully")

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Public validation
    @app.get("/api/validate", tags=["Validation"])
    async def validate_get(request: Request, keygate: KeyGate = Depends(get_keygate)):
        """Validate a key passed in the query string"""
        return await _validate(request, keygate, _validation_params(request.query_params))

    @app.post("/api/validate", tags=["Validation"])
    async def validate_post(request: Request, body: Optional[ValidateRequest] = None,
                            keygate: KeyGate = Depends(get_keygate)):
        """
        Validate a key passed in a JSON body

        - **key**: Access key
        - **hwid**: Device fingerprint
        - **payload_hash** (or **scriptHash**): Payload to release
        - **identity** (or **username**): Optional client identity
        """
        params = _validation_params(request.query_params)
        if body is not None:
            params.update({
                "key": body.key or params["key"],
                "device_fingerprint": body.hwid or params["device_fingerprint"],
                "payload_hash": body.payload_hash or params["payload_hash"],
                "identity": body.identity or params["identity"],
            })
        return await _validate(request, keygate, params)

    async def _validate(request: Request, keygate: KeyGate, params: Dict[str, Optional[str]]):
        result = await keygate.validate(source_address=client_address(request), **params)
        if result.ok:
            return result.to_dict()
        return _error_response(result.error, status_for(result.error))

    # Loader delivery
    @app.get("/files/loader/{payload_hash}.lua", tags=["Delivery"], response_class=PlainTextResponse)
    async def loader(payload_hash: str, request: Request, keygate: KeyGate = Depends(get_keygate)):
        """
        Serve the loader for a payload

        Without ``key`` the response is a stub that re-requests this URL with
        the executor's key, device fingerprint and identity attached.
        """
        params = _validation_params(request.query_params)
        delivery = await keygate.deliver(
            payload_hash,
            key=params["key"],
            device_fingerprint=params["device_fingerprint"],
            identity=params["identity"],
            source_address=client_address(request),
        )
        headers = dict(NO_STORE_HEADERS)
        if delivery.retry_after:
            headers["Retry-After"] = str(delivery.retry_after)
        return PlainTextResponse(delivery.body, status_code=delivery.status_code, headers=headers)

    # Key management
    @app.post("/admin/keys", tags=["Key Management"])
    async def create_key(body: CreateKeyRequest, keygate: KeyGate = Depends(require_operator)):
        """Issue a new access key"""
        key = await keygate.create_key(
            note=body.note,
            bound_payload_hash=body.bound_payload_hash,
            expires_at=body.expires_at,
            max_uses=body.max_uses,
        )
        return {"ok": True, "key": key}

    @app.get("/admin/keys", tags=["Key Management"])
    async def list_keys(payload_hash: Optional[str] = None, keygate: KeyGate = Depends(require_operator)):
        """List keys, optionally only those bound to one payload"""
        keys = await keygate.list_keys(payload_hash)
        return {"ok": True, "keys": keys, "count": len(keys)}

    @app.get("/admin/keys/{key_id}", tags=["Key Management"])
    async def get_key(key_id: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "key": await keygate.get_key(key_id)}

    @app.patch("/admin/keys/{key_id}", tags=["Key Management"])
    async def update_key(key_id: str, body: UpdateKeyRequest, keygate: KeyGate = Depends(require_operator)):
        """
        Change a key; only the fields present in the body are touched

        ``null`` for expires_at, max_uses or bound_payload_hash removes the
        constraint. ``reset_device: true`` unpins the key from its device.
        """
        changes = body.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("Nothing to update")
        return {"ok": True, "key": await keygate.update_key(key_id, **changes)}

    @app.post("/admin/keys/{key_id}/revoke", tags=["Key Management"])
    async def revoke_key(key_id: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "key": await keygate.revoke_key(key_id)}

    @app.post("/admin/keys/{key_id}/unrevoke", tags=["Key Management"])
    async def unrevoke_key(key_id: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "key": await keygate.unrevoke_key(key_id)}

    @app.delete("/admin/keys/{key_id}", tags=["Key Management"])
    async def delete_key(key_id: str, keygate: KeyGate = Depends(require_operator)):
        await keygate.delete_key(key_id)
        return {"ok": True}

    # Payload management
    @app.post("/admin/payloads", tags=["Payload Management"])
    async def save_payload(body: SavePayloadRequest, keygate: KeyGate = Depends(require_operator)):
        """Store a payload, replacing the content if the hash already exists"""
        payload = await keygate.save_payload(
            content=body.content,
            label=body.label,
            kind=body.kind,
            payload_hash=body.payload_hash,
        )
        return {"ok": True, "payload": payload}

    @app.get("/admin/payloads", tags=["Payload Management"])
    async def list_payloads(keygate: KeyGate = Depends(require_operator)):
        payloads = await keygate.list_payloads()
        return {"ok": True, "payloads": payloads, "count": len(payloads)}

    @app.get("/admin/payloads/{payload_hash}", tags=["Payload Management"])
    async def get_payload(payload_hash: str, keygate: KeyGate = Depends(require_operator)):
        """Payload metadata with its decoded content"""
        return {"ok": True, "payload": await keygate.get_payload(payload_hash)}

    @app.patch("/admin/payloads/{payload_hash}", tags=["Payload Management"])
    async def update_payload(payload_hash: str, body: UpdatePayloadRequest,
                             keygate: KeyGate = Depends(require_operator)):
        changes = body.model_dump(exclude_unset=True)
        return {"ok": True, "payload": await keygate.update_payload(payload_hash, **changes)}

    @app.delete("/admin/payloads/{payload_hash}", tags=["Payload Management"])
    async def delete_payload(payload_hash: str, keygate: KeyGate = Depends(require_operator)):
        await keygate.delete_payload(payload_hash)
        return {"ok": True}

    # Usage ledgers
    @app.get("/admin/keys/{key_id}/usage", tags=["Usage"])
    async def get_key_usage(key_id: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, **(await keygate.get_key_usage(key_id))}

    @app.delete("/admin/keys/{key_id}/usage", tags=["Usage"])
    async def clear_key_usage(key_id: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "cleared": await keygate.clear_key_usage(key_id)}

    @app.get("/admin/payloads/{payload_hash}/usage", tags=["Usage"])
    async def get_payload_usage(payload_hash: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, **(await keygate.get_payload_usage(payload_hash))}

    @app.delete("/admin/payloads/{payload_hash}/usage", tags=["Usage"])
    async def clear_payload_usage(payload_hash: str, keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "cleared": await keygate.clear_payload_usage(payload_hash)}

    # Security log
    @app.get("/admin/security-events", tags=["Security"])
    async def list_security_events(limit: int = 100, event_type: Optional[str] = None,
                                   keygate: KeyGate = Depends(require_operator)):
        events = keygate.list_security_events(limit=limit, event_type=event_type)
        return {"ok": True, "events": events, "count": len(events)}

    @app.delete("/admin/security-events", tags=["Security"])
    async def clear_security_events(keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "cleared": keygate.clear_security_events()}

    @app.get("/admin/stats", tags=["Administration"])
    async def get_statistics(keygate: KeyGate = Depends(require_operator)):
        return {"ok": True, "stats": await keygate.get_statistics()}

    # Error handlers
    @app.exception_handler(KeyGateError)
    async def keygate_exception_handler(request, exc):
        """Typed failures keep their kind; storage detail stays in the log"""
        if exc.retryable:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return _error_response(exc.kind, exc.status_code, retry_after=1)
        retry_after = getattr(exc, "retry_after", None)
        return _error_response(exc.kind, exc.status_code, str(exc), retry_after=retry_after)

    @app.exception_handler(ValueError)
    async def value_error_handler(request, exc):
        """Invalid operator input"""
        logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return _error_response(ErrorKind.MALFORMED_REQUEST, 400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request, exc):
        logger.warning(f"{request.method} {request.url.path} malformed: {exc.errors()}")
        return _error_response(ErrorKind.MALFORMED_REQUEST, 400)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom HTTP exception handler"""
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.detail}
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """General exception handler"""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": "Internal server error"}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Run the FastAPI server
    uvicorn.run(
        "keygate_api:app",
        host="0.0.0.0",
        port=8001,
        log_level="info"
    )
