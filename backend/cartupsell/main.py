"""FastAPI application entrypoint.

Configures CORS (admin origins plus the public storefront endpoints),
includes routers, mounts the SQLAdmin back-office and exposes a healthcheck.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqladmin import Admin, ModelView
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import Response as StarletteResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .authentication import SimpleAuth  # noqa: E402
from .database import engine  # noqa: E402
from .deps import get_settings  # noqa: E402
from . import state  # noqa: E402
from .routers import admin as admin_router  # noqa: E402
from .routers import app_proxy as app_proxy_router  # noqa: E402
from .routers import billing as billing_router  # noqa: E402
from .routers import rules as rules_router  # noqa: E402
from .routers import shopify_oauth as shopify_oauth_router  # noqa: E402
from .routers import shopify_webhooks as shopify_webhooks_router  # noqa: E402
from .routers import storefront as storefront_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402
from . import schemas  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: E402


# SQLAdmin ModelView classes for each model
# WHEN MAKING CHANGES TO THESE CLASSES, MAKE SURE TO UPDATE THE __str__ METHODS IN THE MODELS.PY FILE

class ShopAdmin(ModelView, model=models.Shop):
    column_list = [
        models.Shop.shopify_domain,
        models.Shop.current_plan,
        models.Shop.billing_status,
        models.Shop.is_active,
        models.Shop.installed_at,
        models.Shop.uninstalled_at,
    ]
    # Access token stays out of forms
    form_columns = ["current_plan", "billing_status", "free_shipping_enabled", "free_shipping_threshold", "currency_code"]
    column_searchable_list = ["shopify_domain"]
    column_sortable_list = ["shopify_domain", "installed_at"]
    name = "Shop"
    name_plural = "Shops"
    icon = "fa-solid fa-store"


class RuleAdmin(ModelView, model=models.Rule):
    """Admin view for upsell rules.

    Snapshots are refreshed only by the rule service, so editing product ids
    here leaves stale display data; change the name/priority/flag only.
    """
    column_list = [
        models.Rule.name,
        models.Rule.shop,
        models.Rule.trigger_type,
        models.Rule.is_enabled,
        models.Rule.priority,
        models.Rule.created_at,
    ]
    form_columns = ["name", "is_enabled", "priority"]
    column_searchable_list = ["name"]
    column_sortable_list = ["name", "priority", "created_at"]
    name = "Rule"
    name_plural = "Rules"
    icon = "fa-solid fa-wand-magic-sparkles"


class AnalyticsEventAdmin(ModelView, model=models.AnalyticsEvent):
    column_list = [
        models.AnalyticsEvent.event_type,
        models.AnalyticsEvent.rule,
        models.AnalyticsEvent.shop,
        models.AnalyticsEvent.session_id,
        models.AnalyticsEvent.product_price,
        models.AnalyticsEvent.created_at,
    ]
    column_sortable_list = ["event_type", "created_at"]
    can_create = False
    can_edit = False
    name = "Analytics Event"
    name_plural = "Analytics Events"
    icon = "fa-solid fa-chart-line"


class StorefrontCORSMiddleware(BaseHTTPMiddleware):
    """Handle CORS for the public storefront endpoints.

    The cart drawer script runs on each merchant's own domain, so any origin
    is allowed and no credentials are used.
    """

    cors_headers = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith("/api/storefront/"):
            return await call_next(request)

        if request.method == "OPTIONS":
            return StarletteResponse(status_code=200, headers=self.cors_headers)

        response = await call_next(request)
        for key, value in self.cors_headers.items():
            response.headers[key] = value
        return response


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="Cart Upsell API",
        description="""
        Backend for a Shopify cart upsell app.

        - **Storefront** (public): offers for the current cart, free shipping
          bar settings, impression/conversion tracking
        - **Admin** (App Bridge session token): rules, analytics, settings, billing
        - **Shopify**: OAuth install, app/uninstalled and compliance webhooks
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer so redirects use https
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")

    app.add_middleware(SessionMiddleware, secret_key=settings.ADMIN_SECRET_KEY)

    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added after CORSMiddleware so it runs first for storefront paths
    app.add_middleware(StorefrontCORSMiddleware)

    app.include_router(storefront_router.router)
    app.include_router(app_proxy_router.router)
    app.include_router(rules_router.router)
    app.include_router(admin_router.router)
    app.include_router(billing_router.router)
    app.include_router(shopify_oauth_router.router)
    app.include_router(shopify_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Check Redis on startup; the app runs without it."""
        if state.redis_client is None:
            return
        try:
            state.redis_client.ping()
            logger.info("[STARTUP] Redis collection cache is healthy")
        except RedisError as e:
            logger.warning(f"[STARTUP] Redis ping failed, collection cache will degrade: {e}")

    authentication_backend = SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY, password=settings.ADMIN_PASSWORD)
    admin = Admin(app, engine, title="Cart Upsell Admin", authentication_backend=authentication_backend)
    admin.add_view(ShopAdmin)
    admin.add_view(RuleAdmin)
    admin.add_view(AnalyticsEventAdmin)

    return app


app = create_app()
