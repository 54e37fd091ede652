import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from app.core.config import settings
from app.core.db import engine

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

@app.on_event("startup")
async def startup_event():
    logger.info(f"[App] {settings.PROJECT_NAME} started.")

@app.on_event("shutdown")
async def shutdown_event():
    await engine.dispose()
    logger.info("[App] Stopped.")

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Schema violations are user-correctable input errors
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

@app.get("/")
def root():
    return {"message": "Welcome to KYC Verification API", "docs": "/docs"}

from app.modules.compliance.router import router as kyc_router
from app.modules.admin.router import router as admin_router

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from app.core.middleware import RateLimitMiddleware
app.add_middleware(
    RateLimitMiddleware,
    limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
    path_limits={
        "/kyc/providers/": 10, # Each call spends a provider session
        "/kyc/webhook/": 600,
    },
)

app.include_router(kyc_router, prefix=f"{settings.API_V1_STR}/kyc", tags=["kyc"])
app.include_router(admin_router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])
