"""
HTTP surface for the lifecycle guard.

Routes only translate HTTP into change specs and TransitionResults back into
HTTP. Every decision is made by the MutationOrchestrator.
"""
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import generate_latest
from sqlalchemy import text
from sqlalchemy.orm import Session

from lifecycle_guard import models  # noqa: F401  registers tables on Base.metadata
from lifecycle_guard.config import Settings, get_settings
from lifecycle_guard.database import Base, engine, get_db
from lifecycle_guard.domain import (
    DeleteCategory,
    DeleteOrder,
    DeletePost,
    DeleteProduct,
    DeleteUser,
    DenyReason,
    ReadCategory,
    ReadOrder,
    ReadPost,
    ReadProduct,
)
from lifecycle_guard.errors import ConflictError, PersistenceUnavailableError
from lifecycle_guard.logging_config import REQUEST_COUNT, REQUEST_DURATION, configure_logging
from lifecycle_guard.orchestrator import MutationOrchestrator
from lifecycle_guard.repositories import MAX_ID
from lifecycle_guard.schemas import (
    CategoryRequest,
    LoginRequest,
    OrderCreateRequest,
    OrderStatusRequest,
    PostCreateRequest,
    PostUpdateRequest,
    ProductCreateRequest,
    ProductPriceRequest,
    ProductUpdateRequest,
    RegisterRequest,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

STATUS_BY_REASON = {
    DenyReason.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    DenyReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DenyReason.NOT_OWNER: status.HTTP_403_FORBIDDEN,
    DenyReason.SELF_DELETE: status.HTTP_403_FORBIDDEN,
    DenyReason.INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    DenyReason.QUANTITY_OUT_OF_RANGE: status.HTTP_400_BAD_REQUEST,
    DenyReason.DUPLICATE_NAME: status.HTTP_400_BAD_REQUEST,
    DenyReason.REFERENCED_ENTITY_MISSING: status.HTTP_400_BAD_REQUEST,
    DenyReason.IN_USE: status.HTTP_400_BAD_REQUEST,
}

RETRY_AFTER_SECONDS = "1"

security = HTTPBearer(auto_error=False)


#==============================================================================
# DEPENDENCIES
#==============================================================================

def get_orchestrator(db: Session = Depends(get_db),
                     current_settings: Settings = Depends(get_settings)) -> MutationOrchestrator:
    return MutationOrchestrator(db, current_settings)


def get_credential(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    """Raw bearer token, or None; the orchestrator decides what a missing one means"""
    return credentials.credentials if credentials else None


def respond(result, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    if result.ok:
        return JSONResponse(status_code=success_status, content=result.to_dict())
    if result.reason == DenyReason.UNAUTHENTICATED:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=result.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return JSONResponse(status_code=STATUS_BY_REASON[result.reason], content=result.to_dict())


#==============================================================================
# APPLICATION SETUP & MIDDLEWARE
#==============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    configure_logging(settings)
    logger.info("service_starting", app_name=settings.app_name, environment=settings.environment)
    Base.metadata.create_all(bind=engine)
    yield
    logger.info("service_stopped")


app = FastAPI(
    title=settings.app_name,
    description="Ownership, role and lifecycle checks for posts and orders",
    version=settings.version,
    lifespan=lifespan,
)


# Request logging and metrics middleware
@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code
    ).inc()
    REQUEST_DURATION.observe(process_time)

    logger.info("http_request",
                method=request.method,
                url=str(request.url),
                status_code=response.status_code,
                process_time=process_time,
                ip=request.client.host if request.client else None)

    response.headers["X-Process-Time"] = str(process_time)
    response.headers["X-API-Version"] = settings.version
    return response


#==============================================================================
# MONITORING
#==============================================================================

@app.get("/health", tags=["Monitoring"])
def health_check(db: Session = Depends(get_db)):
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.version,
        "environment": settings.environment,
        "checks": {},
    }
    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        health_status["checks"]["database"] = f"unhealthy: {e}" if settings.debug else "unhealthy"
        health_status["status"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type="text/plain")


#==============================================================================
# AUTH
#==============================================================================

@app.post("/api/auth/signup", tags=["Auth"])
def signup(payload: RegisterRequest,
           orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.register_user(payload.to_change()), status.HTTP_201_CREATED)


@app.post("/api/auth/login", tags=["Auth"])
def login(payload: LoginRequest,
          orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.login(str(payload.email), payload.password))


@app.get("/api/auth/me", tags=["Auth"])
def read_current_user(credential: Optional[str] = Depends(get_credential),
                      orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.current_user(credential))


#==============================================================================
# POSTS
#==============================================================================

@app.post("/api/posts", tags=["Posts"])
def create_post(payload: PostCreateRequest,
                credential: Optional[str] = Depends(get_credential),
                orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.request_transition(None, credential, payload.to_change())
    return respond(result, status.HTTP_201_CREATED)


@app.get("/api/posts", tags=["Posts"])
def list_posts(skip: int = Query(0, ge=0, le=MAX_ID),
               limit: int = Query(100, ge=1, le=100),
               author_id: Optional[int] = None,
               tag: Optional[str] = Query(None, max_length=50),
               credential: Optional[str] = Depends(get_credential),
               orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.list_posts(credential, skip=skip, limit=limit, author_id=author_id, tag=tag))


@app.get("/api/posts/{post_id}", tags=["Posts"])
def read_post(post_id: int,
              credential: Optional[str] = Depends(get_credential),
              orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(post_id, credential, ReadPost()))


@app.patch("/api/posts/{post_id}", tags=["Posts"])
def update_post(post_id: int, payload: PostUpdateRequest,
                credential: Optional[str] = Depends(get_credential),
                orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(post_id, credential, payload.to_change()))


@app.delete("/api/posts/{post_id}", tags=["Posts"])
def delete_post(post_id: int,
                credential: Optional[str] = Depends(get_credential),
                orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(post_id, credential, DeletePost()))


#==============================================================================
# ORDERS
#==============================================================================

@app.post("/api/orders", tags=["Orders"])
def create_order(payload: OrderCreateRequest,
                 credential: Optional[str] = Depends(get_credential),
                 orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.request_transition(None, credential, payload.to_change())
    return respond(result, status.HTTP_201_CREATED)


@app.get("/api/orders", tags=["Orders"])
def list_orders(credential: Optional[str] = Depends(get_credential),
                orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.list_orders(credential))


@app.get("/api/orders/{order_id}", tags=["Orders"])
def read_order(order_id: int,
               credential: Optional[str] = Depends(get_credential),
               orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(order_id, credential, ReadOrder()))


@app.put("/api/orders/{order_id}/status", tags=["Orders"])
def update_order_status(order_id: int, payload: OrderStatusRequest,
                        credential: Optional[str] = Depends(get_credential),
                        orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(order_id, credential, payload.to_change()))


@app.delete("/api/orders/{order_id}", tags=["Orders"])
def delete_order(order_id: int,
                 credential: Optional[str] = Depends(get_credential),
                 orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(order_id, credential, DeleteOrder()))


#==============================================================================
# USERS & CATALOG
#==============================================================================

@app.delete("/api/users/{user_id}", tags=["Users"])
def delete_user(user_id: int,
                credential: Optional[str] = Depends(get_credential),
                orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(user_id, credential, DeleteUser()))


@app.get("/api/categories", tags=["Catalog"])
def list_categories(credential: Optional[str] = Depends(get_credential),
                    orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.list_categories(credential))


@app.get("/api/categories/{category_id}", tags=["Catalog"])
def read_category(category_id: int,
                  credential: Optional[str] = Depends(get_credential),
                  orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(category_id, credential, ReadCategory()))


@app.post("/api/categories", tags=["Catalog"])
def create_category(payload: CategoryRequest,
                    credential: Optional[str] = Depends(get_credential),
                    orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.request_transition(None, credential, payload.to_create())
    return respond(result, status.HTTP_201_CREATED)


@app.put("/api/categories/{category_id}", tags=["Catalog"])
def rename_category(category_id: int, payload: CategoryRequest,
                    credential: Optional[str] = Depends(get_credential),
                    orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(category_id, credential, payload.to_rename()))


@app.delete("/api/categories/{category_id}", tags=["Catalog"])
def delete_category(category_id: int,
                    credential: Optional[str] = Depends(get_credential),
                    orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(category_id, credential, DeleteCategory()))


@app.get("/api/products", tags=["Catalog"])
def list_products(category_id: Optional[int] = None,
                  credential: Optional[str] = Depends(get_credential),
                  orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.list_products(credential, category_id=category_id))


@app.get("/api/products/{product_id}", tags=["Catalog"])
def read_product(product_id: int,
                 credential: Optional[str] = Depends(get_credential),
                 orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(product_id, credential, ReadProduct()))


@app.post("/api/products", tags=["Catalog"])
def create_product(payload: ProductCreateRequest,
                   credential: Optional[str] = Depends(get_credential),
                   orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    result = orchestrator.request_transition(None, credential, payload.to_change())
    return respond(result, status.HTTP_201_CREATED)


@app.put("/api/products/{product_id}/price", tags=["Catalog"])
def change_product_price(product_id: int, payload: ProductPriceRequest,
                         credential: Optional[str] = Depends(get_credential),
                         orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(product_id, credential, payload.to_change()))


@app.patch("/api/products/{product_id}", tags=["Catalog"])
def update_product(product_id: int, payload: ProductUpdateRequest,
                   credential: Optional[str] = Depends(get_credential),
                   orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(product_id, credential, payload.to_change()))


@app.delete("/api/products/{product_id}", tags=["Catalog"])
def delete_product(product_id: int,
                   credential: Optional[str] = Depends(get_credential),
                   orchestrator: MutationOrchestrator = Depends(get_orchestrator)):
    return respond(orchestrator.request_transition(product_id, credential, DeleteProduct()))


#==============================================================================
# ERROR HANDLERS
#==============================================================================

@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"ok": False, "reason": exc.code, "message": exc.message},
    )


@app.exception_handler(PersistenceUnavailableError)
async def unavailable_handler(request: Request, exc: PersistenceUnavailableError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ok": False, "reason": exc.code, "message": exc.message},
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error("internal_server_error",
                 path=request.url.path,
                 error=str(exc),
                 exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "reason": "InternalError",
            "message": "An unexpected error occurred" if not settings.debug else str(exc),
        },
    )
