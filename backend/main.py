import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import settings
from core.exceptions import MarketplaceError
from core.rate_limit import limiter
from database import connect_db, close_db
from services import notification_service

# Routers
from routers import orders, users, wallets

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await connect_db()
    logger.info("Badr API started")
    yield
    # Shutdown : les notifications en vol partent avant la fermeture de la base
    await notification_service.drain()
    await close_db()
    logger.info("Badr API stopped")


app = FastAPI(
    title="Badr API",
    description="Marketplace de livraison : offres, acceptation multi-livreurs, règlement wallet",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} → {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else ["https://badr.app"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
app.include_router(wallets.router, prefix="/api/wallets", tags=["Wallets"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "app": "badr", "version": "1.0.0"}
