"""FastAPI application entrypoint."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from app.adapters.provider import MockComputeProvider
from app.errors import ApiError
from app.repositories.memory import InMemoryStore
from app.routes import internal_router, jobs_router, ledger_router, webhooks_router
from app.schemas.error import ErrorResponse
from app.schemas.webhook import ProviderPayload

logger = logging.getLogger(__name__)

_OPENAPI_RESPONSE_CODES: dict[str, dict[str, set[str]]] = {
    "/api/v1/jobs": {"post": {"201", "401", "402", "403", "422", "502"}},
    "/api/v1/jobs/pending": {"get": {"200", "401"}},
    "/api/v1/jobs/{jobId}": {"get": {"200", "401", "404"}},
    "/api/v1/jobs/{jobId}/cancel": {"post": {"200", "401", "404", "409", "502"}},
    "/api/v1/ledger": {"get": {"200", "401"}},
    "/api/v1/webhooks/provider": {"post": {"200", "401"}},
    "/api/v1/internal/ledger/{userId}/credit": {"post": {"200", "401", "404", "422"}},
    "/api/v1/internal/ledger/{userId}/reset": {"post": {"200", "401", "409", "422"}},
}


def _apply_contract_response_codes(schema: dict) -> None:
    """Limit documented response codes to the ones each route actually produces."""
    for path, methods in _OPENAPI_RESPONSE_CODES.items():
        path_item = schema.get("paths", {}).get(path)
        if not path_item:
            continue

        for method, allowed_codes in methods.items():
            operation = path_item.get(method)
            if not operation:
                continue

            responses = operation.setdefault("responses", {})
            for status_code in list(responses.keys()):
                if status_code not in allowed_codes:
                    responses.pop(status_code, None)

            for status_code in sorted(allowed_codes):
                responses.setdefault(status_code, {"description": "See API contract"})


def _apply_webhook_request_schema(schema: dict) -> None:
    """Document the provider payload even though the route reads the raw body."""
    path_item = schema.get("paths", {}).get("/api/v1/webhooks/provider")
    if not path_item:
        return

    operation = path_item.get("post")
    if not operation:
        return

    content = operation.setdefault("requestBody", {}).setdefault("content", {}).setdefault("application/json", {})
    content["schema"] = {"$ref": "#/components/schemas/ProviderPayload"}
    for header in ("webhook-id", "webhook-timestamp", "webhook-signature"):
        operation.setdefault("parameters", []).append(
            {"name": header, "in": "header", "required": False, "schema": {"type": "string"}}
        )


def _apply_cancel_conflict_schema(schema: dict) -> None:
    path_item = schema.get("paths", {}).get("/api/v1/jobs/{jobId}/cancel")
    if not path_item:
        return

    operation = path_item.get("post")
    if not operation:
        return

    responses = operation.setdefault("responses", {})
    conflict = responses.setdefault("409", {"description": "See API contract"})
    content = conflict.setdefault("content", {}).setdefault("application/json", {})
    content["schema"] = {"$ref": "#/components/schemas/FsmTransitionError"}


def create_app() -> FastAPI:
    app = FastAPI(title="Atelier API", version="1.0.0")
    app.state.store = InMemoryStore()
    # Used only when ATELIER_PROVIDER_BACKEND=mock; one instance per app keeps external ids unique.
    app.state.mock_provider = MockComputeProvider()

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(
            "request.validation_failed method=%s path=%s errors=%s",
            request.method,
            request.url.path,
            len(exc.errors()),
        )
        payload = ErrorResponse(
            code="VALIDATION_ERROR",
            message="Invalid request payload",
            details={"errors": jsonable_encoder(exc.errors(), exclude={"input", "ctx"})},
        )
        return JSONResponse(status_code=422, content=payload.model_dump(mode="json"))

    api_prefix = "/api/v1"
    app.include_router(jobs_router, prefix=api_prefix)
    app.include_router(ledger_router, prefix=api_prefix)
    app.include_router(webhooks_router, prefix=api_prefix)
    app.include_router(internal_router, prefix=api_prefix)

    def custom_openapi() -> dict:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        schema.setdefault("components", {}).setdefault("schemas", {})
        _register_component_schemas(schema)
        _apply_contract_response_codes(schema)
        _apply_webhook_request_schema(schema)
        _apply_cancel_conflict_schema(schema)
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


def _register_component_schemas(schema: dict) -> None:
    components = schema["components"]["schemas"]
    components.setdefault(
        "ProviderPayload",
        ProviderPayload.model_json_schema(ref_template="#/components/schemas/{model}"),
    )


app = create_app()
