# main.py - Complaint Portal API

import logging
import mimetypes
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, Depends, Query, Path as PathParam, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import (
    ALLOW_ORIGINS,
    DEBUG,
    ENABLE_SECURITY_HEADERS,
    ENVIRONMENT,
    HOST,
    LOG_DIR,
    MAX_FILES_PER_REQUEST,
    MAX_REQUEST_SIZE,
    PORT,
    RATE_LIMIT_ENABLED,
    UPLOADS_DIR,
)
from db import Database
from errors import ComplaintError, ValidationError, StoreFailure
from schemas import (
    ComplaintMetadata,
    ComplaintCreatedResponse,
    ComplaintDetailResponse,
    ComplaintListResponse,
    MessageResponse,
    RegisterRequest,
    LoginRequest,
    LoginResponse,
)
from services import (
    IncomingFile,
    IntakeService,
    QueryService,
    LifecycleService,
    AccountService,
)
from storage import BlobStore

# ==========================================================
# Logging Configuration
# ==========================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(LOG_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("main")

# ==========================================================
# Rate Limiting Setup
# ==========================================================
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

# ==========================================================
# Dependencies
# ==========================================================
def get_database(request: Request) -> Database:
    return request.app.state.database


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blobs


def get_intake_service(
    database: Database = Depends(get_database),
    blobs: BlobStore = Depends(get_blob_store),
) -> IntakeService:
    return IntakeService(database, blobs)


def get_query_service(database: Database = Depends(get_database)) -> QueryService:
    return QueryService(database)


def get_lifecycle_service(
    database: Database = Depends(get_database),
    blobs: BlobStore = Depends(get_blob_store),
) -> LifecycleService:
    return LifecycleService(database, blobs)


def get_account_service(database: Database = Depends(get_database)) -> AccountService:
    return AccountService(database)


router = APIRouter()

# ==========================================================
# Health & System Endpoints
# ==========================================================
@router.get("/health", tags=["System"])
@limiter.limit("10/minute")
def health_check(request: Request):
    """System health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "environment": ENVIRONMENT,
        "database": "connected" if request.app.state.database.is_connected else "disconnected",
    }


@router.get("/", tags=["System"])
def root():
    """API root endpoint with available routes"""
    return {
        "service": "Complaint Portal API",
        "version": "1.0.0",
        "status": "running",
        "environment": ENVIRONMENT,
        "endpoints": {
            "system": {
                "health": "/health",
                "root": "/"
            },
            "auth": {
                "register": "/api/register",
                "login": "/api/login"
            },
            "complaints": {
                "create": "/api/complaints",
                "list": "/api/complaints?page=&limit=",
                "get_by_id": "/api/complaints/{id}",
                "delete": "/api/complaints/{id}"
            },
            "media": {
                "fetch": "/api/media/{filename}"
            }
        }
    }

# ==========================================================
# Complaint Routes
# ==========================================================
@router.post("/api/complaints", response_model=ComplaintCreatedResponse, status_code=201, tags=["Complaints"])
@limiter.limit("30/minute")
async def create_complaint(request: Request, intake: IntakeService = Depends(get_intake_service)):
    """Submit a complaint with any number of attached files.

    Text fields: fullName, age, voterNumber, gender, categories. Every file
    part is an attachment; the name of the field it was sent under is
    recorded as its file type.
    """
    max_request_size = request.app.state.max_request_size
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_request_size:
        raise _request_too_large(max_request_size)

    # Chunked bodies carry no Content-Length; count what actually arrives
    received = 0

    async def receive():
        nonlocal received
        message = await request.receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > max_request_size:
                logger.warning(f"⚠️ Complaint upload rejected after {received} bytes")
                raise _request_too_large(max_request_size)
        return message

    form = await Request(request.scope, receive).form(max_files=MAX_FILES_PER_REQUEST)
    try:
        metadata = ComplaintMetadata.from_form(form)
        files = [
            IncomingFile(field_name=name, filename=value.filename, content=value)
            for name, value in form.multi_items()
            if not isinstance(value, str)
        ]
        complaint_id = await intake.submit(metadata, files)
    finally:
        await form.close()

    return ComplaintCreatedResponse(message="Complaint submitted successfully", complaint_id=complaint_id)


def _request_too_large(max_request_size: int) -> ValidationError:
    return ValidationError(f"Request too large. Maximum size: {max_request_size // 1024 // 1024}MB")


@router.get("/api/complaints", response_model=ComplaintListResponse, tags=["Complaints"])
@limiter.limit("60/minute")
async def list_complaints(
    request: Request,
    page: Optional[str] = Query(None, description="Page number, starting at 1"),
    limit: Optional[str] = Query(None, description="Complaints per page"),
    queries: QueryService = Depends(get_query_service),
):
    """Get complaints, newest first, with pagination metadata"""
    result = await queries.list_complaints(page, limit)
    return ComplaintListResponse(data=result.items, pagination=result.pagination)


@router.get("/api/complaints/{complaint_id}", response_model=ComplaintDetailResponse, tags=["Complaints"])
@limiter.limit("60/minute")
async def get_complaint(
    request: Request,
    complaint_id: str = PathParam(..., description="Complaint ID"),
    queries: QueryService = Depends(get_query_service),
):
    """Get a specific complaint by ID"""
    return ComplaintDetailResponse(data=await queries.get_complaint(complaint_id))


@router.delete("/api/complaints/{complaint_id}", response_model=MessageResponse, tags=["Complaints"])
@limiter.limit("30/minute")
async def delete_complaint(
    request: Request,
    complaint_id: str = PathParam(..., description="Complaint ID"),
    lifecycle: LifecycleService = Depends(get_lifecycle_service),
):
    """Delete a complaint together with its media"""
    await lifecycle.delete(complaint_id)
    return MessageResponse(message="Complaint deleted successfully")

# ==========================================================
# Media Routes
# ==========================================================
@router.get("/api/media/{filename}", tags=["Media"])
@router.get("/api/audios/{filename}", tags=["Media"], include_in_schema=False)
@limiter.limit("100/minute")
async def serve_media(
    request: Request,
    filename: str = PathParam(..., description="Filename to serve"),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Serve an uploaded complaint file"""
    handle = await blobs.open(filename)
    media_type, _ = mimetypes.guess_type(filename)
    return StreamingResponse(
        blobs.iter_chunks(handle),
        media_type=media_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

# ==========================================================
# Account Routes
# ==========================================================
@router.post("/api/register", response_model=MessageResponse, status_code=201, tags=["Authentication"])
@limiter.limit("5/minute")
async def register(
    request: Request,
    payload: RegisterRequest,
    accounts: AccountService = Depends(get_account_service),
):
    """Register a new portal account"""
    await accounts.register(payload)
    return MessageResponse(message="User registered successfully")


@router.post("/api/login", response_model=LoginResponse, tags=["Authentication"])
@limiter.limit("10/minute")
async def login(
    request: Request,
    payload: LoginRequest,
    accounts: AccountService = Depends(get_account_service),
):
    """Login with email and password"""
    return await accounts.login(payload.email, payload.password)

# ==========================================================
# Error Handlers
# ==========================================================
async def complaint_error_handler(request: Request, exc: ComplaintError):
    content = {"success": False, "message": exc.message}
    if isinstance(exc, StoreFailure):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} - {exc.cause}")
        if exc.cause is not None:
            content["error"] = str(exc.cause)
    return JSONResponse(status_code=exc.status_code, content=content)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": f"Invalid request - {details}"},
    )


async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Global exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Something broke!"},
    )

# ==========================================================
# App Initialization
# ==========================================================
def create_app(
    database: Optional[Database] = None,
    blobs: Optional[BlobStore] = None,
    max_request_size: int = MAX_REQUEST_SIZE,
) -> FastAPI:
    """Build the API around a database handle and blob store.

    The database pool is opened when the app starts and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting Complaint Portal API...")
        try:
            await app.state.database.connect()
            logger.info("✅ Database connected successfully")
        except Exception:
            logger.exception("❌ Startup failed")
            raise
        yield
        logger.info("📤 Shutting down Complaint Portal API...")
        try:
            await app.state.database.disconnect()
            logger.info("✅ Database disconnected successfully")
        except Exception:
            logger.exception("❌ Shutdown error")

    app = FastAPI(
        title="Complaint Portal API",
        description="Citizen complaint intake with media attachments",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
    )
    app.state.database = database or Database()
    app.state.blobs = blobs or BlobStore(UPLOADS_DIR)
    app.state.max_request_size = max_request_size

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOW_ORIGINS,
        allow_credentials="*" not in ALLOW_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        if ENABLE_SECURITY_HEADERS:
            response.headers["X-Content-Type-Options"] = "nosniff"
            response.headers["X-Frame-Options"] = "DENY"
            response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    app.add_exception_handler(ComplaintError, complaint_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(router)
    return app


app = create_app()

# ==========================================================
# Development Entry Point
# ==========================================================
if __name__ == "__main__":
    import uvicorn

    logger.info(f"🚀 Starting Complaint Portal API on {HOST}:{PORT}")
    logger.info(f"📊 Environment: {ENVIRONMENT}")
    logger.info(f"🐛 Debug mode: {DEBUG}")
    logger.info(f"📁 Upload directory: {UPLOADS_DIR}")

    uvicorn.run(
        "main:app",
        host=HOST,
        port=PORT,
        reload=DEBUG,
        log_level="info" if not DEBUG else "debug"
    )
