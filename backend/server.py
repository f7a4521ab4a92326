from routes.usage import usage_router
from routes.admin_auth import admin_auth_router
from routes.admin import admin_router
from routes.parent_dashboard import parent_dashboard_router
from routes.parent_verify_charge import verify_charge_router
from routes.parent import parent_router
from routes.auth import auth_router
from account_trust.errors import TrustEngineError
from account_trust.engine import build_engine
from account_trust.config import EngineSettings
from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

settings = EngineSettings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own engine before the app starts
    if getattr(app.state, "engine", None) is None:
        if settings.storage_backend == "mongo":
            from database import check_db_connection
            engine = build_engine(settings)
            db_ok, db_error = await check_db_connection(engine.storage.client, engine.storage.db)
            if not db_ok:
                logger.critical(f"Database connection failed on startup: {db_error}")
                raise RuntimeError(
                    f"Cannot start application - database connection failed: {db_error}")
        else:
            engine = build_engine(settings)
        app.state.engine = engine

    await app.state.engine.start()
    logger.info(f"Account trust engine ready ({app.state.engine.settings.storage_backend} backend)")
    try:
        yield
    finally:
        await app.state.engine.close()
        logger.info("Account trust engine closed")


# Create the main app
app = FastAPI(title="Game Studio - Account Trust Engine", lifespan=lifespan)

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    engine = getattr(app.state, "engine", None)
    return {
        "status": "healthy",
        "storage_backend": engine.settings.storage_backend if engine else None,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


api_router.include_router(auth_router, prefix="/auth")
api_router.include_router(parent_router, prefix="/parent")
api_router.include_router(verify_charge_router, prefix="/parent/verify-charge")
api_router.include_router(parent_dashboard_router, prefix="/parent-dashboard")
api_router.include_router(admin_auth_router, prefix="/admin-auth")
api_router.include_router(admin_router, prefix="/admin")
api_router.include_router(usage_router, prefix="/usage")

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.exception_handler(TrustEngineError)
async def trust_engine_error_handler(request: Request, exc: TrustEngineError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

