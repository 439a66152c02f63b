from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from config import settings
from database import init_db, async_session_maker
from errors import install_exception_handlers
from security import install_security_middleware
from seed_data import seed_on_startup
from auth_api import router as auth_router
from products_api import router as products_router
from stock_api import router as stock_router
from sales_api import router as sales_router
from dashboard_api import router as dashboard_router
from customers_api import router as customers_router
from timezone_utils import utcnow

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# Registered before CORS so CORS stays outermost and also covers 413/429 responses
install_security_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)

install_exception_handlers(app)

app.include_router(auth_router)
app.include_router(products_router)
app.include_router(stock_router)
app.include_router(sales_router)
app.include_router(dashboard_router)
app.include_router(customers_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info("=" * 60)

    try:
        await init_db()
    except ConnectionRefusedError as e:
        logger.error("=" * 60)
        logger.error("CRITICAL: Database connection refused!")
        logger.error(f"Error: {e}")
        logger.error("Check DATABASE_URL and that the database server is reachable")
        logger.error("=" * 60)
        raise
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise

    async with async_session_maker() as db:
        await seed_on_startup(db)

    logger.info("Application ready")


@app.get("/health")
async def health_check():
    """Liveness check; not rate limited"""
    return {"status": "healthy", "service": "api", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
