import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import INVENTORY_CACHE_CHECK_PERIOD, INVENTORY_CACHE_TTL, LOG_LEVEL
from .database import engine
from .inventory_cache import InventoryCache
from .models import Base
from .reservations import TransientStoreFailure
from .routers import cart_router, inventory_router, order_router, product_router

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Store Service",
    description="Products, carts and orders with per-size stock reservation",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.inventory_cache = InventoryCache(
    default_ttl=INVENTORY_CACHE_TTL,
    check_period=INVENTORY_CACHE_CHECK_PERIOD,
)

app.include_router(product_router.router)
app.include_router(cart_router.router)
app.include_router(order_router.router)
app.include_router(inventory_router.router)


@app.exception_handler(TransientStoreFailure)
def _store_unavailable(request: Request, exc: TransientStoreFailure):
    return JSONResponse(
        status_code=503,
        content={"detail": {"error": "store_unavailable", "message": "Please retry shortly."}},
    )


@app.on_event("startup")
def _startup() -> None:
    # Create database tables
    Base.metadata.create_all(bind=engine)
    app.state.inventory_cache.start()
    logger.info("Inventory cache started (ttl=%ss)", INVENTORY_CACHE_TTL)


@app.on_event("shutdown")
def _shutdown() -> None:
    app.state.inventory_cache.dispose()


@app.get("/")
def root():
    return {
        "service": "Store Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "store-service"
    }
