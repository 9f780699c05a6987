"""HTTP surface: payment init, provider callbacks and health."""

import logging
import re
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Tuple

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel, Field
from slowapi.errors import RateLimitExceeded

from .config import Settings
from .connectors import build_connectors
from .connectors.base import CallbackChannel, ConnectorBase
from .database import DatabaseManager, SqlAlchemyOrderStore
from .errors import PROBLEM_TYPE_BASE, PaymentError
from .ratelimit import create_limiter, limit_init_endpoint, rate_limit_handler
from .reconciliation import PaidHook, ReconciliationResult, ReconciliationService
from .services import PaymentInitService
from .store import OrderStore

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"
LANG_RE = re.compile(r"^[a-z]{2}$", re.IGNORECASE)
INIT_PATH = "/api/v1/payments/{provider}/init"

router = APIRouter()

# Storefront URLs registered with the providers before this service existed.
# name -> (provider, {method: channel}, extra params)
LEGACY_ROUTES: Dict[str, Tuple[str, Dict[str, CallbackChannel], Dict[str, str]]] = {
    "ameriabank_successful": ("ameriabank", {"GET": CallbackChannel.RETURN}, {}),
    "ameriabank_failed": ("ameriabank", {"GET": CallbackChannel.RETURN}, {}),
    "fastshift_response": (
        "fastshift",
        {"GET": CallbackChannel.RETURN, "POST": CallbackChannel.WEBHOOK},
        {},
    ),
    "idram_complete": ("idram", {"GET": CallbackChannel.RETURN}, {"result": "success"}),
    "idram_fail": ("idram", {"GET": CallbackChannel.RETURN}, {"result": "fail"}),
    "idram_result": ("idram", {"POST": CallbackChannel.WEBHOOK}, {}),
    "telcell_redirect": ("telcell", {"GET": CallbackChannel.RETURN}, {}),
    "telcell_result": (
        "telcell",
        {"GET": CallbackChannel.WEBHOOK, "POST": CallbackChannel.WEBHOOK},
        {},
    ),
}


class InitPaymentBody(BaseModel):
    """Request body for starting a provider payment."""
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    lang: Optional[str] = None

    class Config:
        populate_by_name = True

    @property
    def locale(self) -> str:
        if self.lang and LANG_RE.match(self.lang):
            return self.lang.lower()
        return "en"


def problem_response(
    request: Request,
    status: int,
    problem_type: str,
    title: str,
    detail: str,
) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "type": f"{PROBLEM_TYPE_BASE}/{problem_type}",
            "title": title,
            "status": status,
            "detail": detail,
            "instance": str(request.url),
        },
        media_type=PROBLEM_MEDIA_TYPE,
    )


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    return problem_response(request, exc.status_code, exc.problem_type, exc.title, exc.detail)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in errors
    ) or "Invalid request"
    return problem_response(request, 400, "validation-error", "Validation Error", detail)


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return problem_response(request, 500, "internal-error", "Internal Server Error", "Internal Server Error")


async def collect_params(request: Request) -> Dict[str, str]:
    """Flatten query string and form or JSON body into one mapping; the body wins."""
    params: Dict[str, str] = dict(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            logger.warning(f"Unparseable JSON callback body on {request.url.path}")
            body = None
        if isinstance(body, dict):
            for key, value in body.items():
                if value is None or isinstance(value, (dict, list)):
                    continue
                params[key] = str(value)
    elif "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        for key, value in form.items():
            if isinstance(value, str):
                params[key] = value
    return params


def callback_response(connector: ConnectorBase, result: ReconciliationResult) -> Response:
    if result.channel is CallbackChannel.RETURN:
        return RedirectResponse(result.redirect_url, status_code=302)
    return PlainTextResponse(
        result.ack_body,
        status_code=result.ack_status,
        media_type=connector.ack_media_type,
    )


async def dispatch_callback(
    request: Request,
    provider: str,
    channel: CallbackChannel,
    extra_params: Optional[Dict[str, str]] = None,
) -> Response:
    service: ReconciliationService = request.app.state.reconciliation_service
    connector = service.get_connector(provider, channel)
    params = await collect_params(request)
    if extra_params:
        params.update(extra_params)
    result = await service.handle(provider, params, channel)
    logger.info(
        f"{provider} {channel.value} callback -> {result.kind.value}"
        + (f" (order {result.order_number})" if result.order_number else "")
    )
    return callback_response(connector, result)


async def init_payment(request: Request, provider: str, body: InitPaymentBody):
    """
    Start a payment with a provider.

    Mounted by ``create_app`` behind that app's own rate limiter.

    Returns ``{redirectUrl}`` or ``{formAction, formData}`` for the browser.
    """
    service: PaymentInitService = request.app.state.init_service
    result = await service.initiate(body.order_number or "", provider, body.locale)
    return result.to_response()


@router.get("/callback/{provider}/return")
async def provider_return(request: Request, provider: str):
    return await dispatch_callback(request, provider, CallbackChannel.RETURN)


@router.api_route("/callback/{provider}/webhook", methods=["GET", "POST"])
async def provider_webhook(request: Request, provider: str):
    return await dispatch_callback(request, provider, CallbackChannel.WEBHOOK)


@router.post("/callback/{provider}/precheck")
async def provider_precheck(request: Request, provider: str):
    return await dispatch_callback(request, provider, CallbackChannel.PRECHECK)


@router.api_route("/wc-api/{legacy_name}", methods=["GET", "POST"])
async def legacy_callback(request: Request, legacy_name: str):
    route = LEGACY_ROUTES.get(legacy_name)
    channel = route[1].get(request.method) if route else None
    if route is None or channel is None:
        return problem_response(
            request, 404, "not-found", "Not found", f"No callback at /wc-api/{legacy_name}"
        )
    provider, _, extra = route
    return await dispatch_callback(request, provider, channel, extra)


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    registry: Dict[str, ConnectorBase] = request.app.state.connectors
    return {
        "status": "ok",
        "providers": {name: c.health_check() for name, c in registry.items()},
    }


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[OrderStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    connectors: Optional[Dict[str, ConnectorBase]] = None,
    paid_hooks: Optional[List[PaidHook]] = None,
) -> FastAPI:
    """Build the application.

    Anything not injected is created from ``settings`` when the app starts:
    the SQLAlchemy store, the shared httpx client and the connectors.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_manager: Optional[DatabaseManager] = None
        owned_client: Optional[httpx.AsyncClient] = None

        order_store = store
        if order_store is None:
            db_manager = DatabaseManager(settings.database_url)
            await db_manager.initialize(create_tables=settings.create_tables)
            order_store = SqlAlchemyOrderStore(db_manager)

        client = http_client
        if client is None and connectors is None:
            owned_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
            client = owned_client

        registry = connectors if connectors is not None else build_connectors(settings, client)

        app.state.settings = settings
        app.state.connectors = registry
        app.state.init_service = PaymentInitService(order_store, registry)
        app.state.reconciliation_service = ReconciliationService(
            order_store, registry, settings.base_url, paid_hooks=paid_hooks
        )
        configured = [name for name, c in registry.items() if c.is_configured()]
        logger.info(f"Payments API started; configured providers: {', '.join(configured) or 'none'}")
        try:
            yield
        finally:
            if owned_client is not None:
                await owned_client.aclose()
            if db_manager is not None:
                await db_manager.shutdown()

    app = FastAPI(title="Storefront Payments API", lifespan=lifespan)

    app.state.limiter = create_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, internal_error_handler)
    app.add_api_route(
        INIT_PATH,
        limit_init_endpoint(app.state.limiter, settings, init_payment),
        methods=["POST"],
    )
    app.include_router(router)

    return app
