# main.py - Civic Connect Backend API

import os
import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Path as PathParam, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from db import Database, PostgresStore, LOG_DIR, get_store
from ledger import LedgerService, USER_LEDGER, ADMIN_LEDGER
from policy import (
    CATEGORIES, CATEGORY_VALUES, STATUS_VALUES, normalize_category, is_valid_status, status_display,
)
from session import SessionContext, AuthService, ROLE_ADMIN, ROLE_CITIZEN

# ==========================================================
# Configuration & Environment Setup
# ==========================================================
from dotenv import load_dotenv
load_dotenv()

# Environment variables with defaults
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
SUBMIT_DELAY_SECONDS = float(os.getenv("SUBMIT_DELAY_SECONDS", "0"))
LOGIN_DELAY_SECONDS = float(os.getenv("LOGIN_DELAY_SECONDS", "0"))

# ==========================================================
# Logging Configuration
# ==========================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(os.path.join(LOG_DIR, "app.log")),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("main")

# ==========================================================
# Store, ledgers & session
# ==========================================================
store = get_store()
ledger_service = LedgerService(store)
session_context = SessionContext(store)


def get_ledger_service() -> LedgerService:
    return ledger_service


def get_session_context() -> SessionContext:
    return session_context

# ==========================================================
# Rate Limiting Setup
# ==========================================================
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

# ==========================================================
# App Initialization
# ==========================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting Civic Connect API...")
    try:
        if isinstance(store, PostgresStore):
            Database.connect()
            logger.info("✅ Database connected successfully")
    except Exception:
        logger.exception("❌ Startup failed")
        raise
    yield
    logger.info("📤 Shutting down Civic Connect API...")
    try:
        if isinstance(store, PostgresStore):
            Database.disconnect()
            logger.info("✅ Database disconnected successfully")
    except Exception:
        logger.exception("❌ Shutdown error")

app = FastAPI(
    title="Civic Connect Backend API",
    description="Civic issue reporting with mirrored citizen and admin complaint ledgers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if DEBUG else None,
    redoc_url="/redoc" if DEBUG else None,
)

# ==========================================================
# Security & CORS & Middleware
# ==========================================================
security = HTTPBearer()

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS Configuration
allow_origins = os.getenv("ALLOW_ORIGINS", "http://localhost:8080").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allow_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security headers middleware
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    if os.getenv("ENABLE_SECURITY_HEADERS", "true").lower() == "true":
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response

# ==========================================================
# Pydantic Models
# ==========================================================
class SignupRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100, description="Display name")
    email: EmailStr = Field(..., description="Valid email address")
    password: str = Field(..., min_length=1, max_length=128, description="Password")

class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100, description="Username")
    password: str = Field(..., min_length=1, description="Password")

class AdminLoginRequest(BaseModel):
    username: str = Field(..., description="Admin username")
    password: str = Field(..., description="Admin password")

class TokenResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user: Dict[str, Any]

class ComplaintCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Name of person filing complaint")
    address: str = Field(..., min_length=1, max_length=500, description="Location of the issue")
    phone: str = Field(..., min_length=1, max_length=30, description="Contact phone number")
    category: str = Field(..., min_length=1, max_length=50, description="Complaint category")
    description: str = Field(..., min_length=1, max_length=2000, description="Detailed description")
    image: Optional[str] = Field(None, max_length=255, description="Name of the attached image file")

    @validator('name', 'address', 'phone', 'description')
    def validate_required(cls, v):
        if not v.strip():
            raise ValueError('Field is required')
        return v.strip()

    @validator('category')
    def validate_category(cls, v):
        normalized = normalize_category(v)
        if normalized not in CATEGORY_VALUES:
            raise ValueError(f'Category must be one of: {", ".join(CATEGORIES)}')
        return normalized

    @validator('image')
    def validate_image(cls, v):
        # only the bare filename is kept
        if v is None:
            return None
        return os.path.basename(v.replace("\\", "/")) or None

class ComplaintStatusUpdate(BaseModel):
    status: str = Field(..., description="New status for the complaint")

    @validator('status')
    def validate_status(cls, v):
        if not is_valid_status(v):
            raise ValueError(f'Status must be one of: {", ".join(STATUS_VALUES)}')
        return v

class ComplaintResponse(BaseModel):
    id: str
    name: str
    address: str
    phone: str
    category: str
    description: str
    image: Optional[str]
    date: str
    status: str
    status_display: Dict[str, str]

class ReconcileRequest(BaseModel):
    source: str = Field(ADMIN_LEDGER, description="Ledger whose records win")


def to_response(complaint) -> ComplaintResponse:
    return ComplaintResponse(**complaint.dict(), status_display=status_display(complaint.status))

# ==========================================================
# Authentication Dependencies & Utilities
# ==========================================================
def get_token_payload(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Decode the bearer token"""
    try:
        return AuthService.decode_token(credentials.credentials)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))

def get_current_user(
    payload: Dict[str, Any] = Depends(get_token_payload),
    session: SessionContext = Depends(get_session_context),
) -> Dict[str, Any]:
    """Citizen behind the token, as long as the citizen session is still open"""
    if payload.get("role") != ROLE_CITIZEN:
        raise HTTPException(status_code=403, detail="Citizen access required")
    user = session.current_user()
    if not user or user.get("username") != payload.get("sub"):
        raise HTTPException(status_code=401, detail="Session has ended, please log in again")
    return user

def get_admin_user(
    payload: Dict[str, Any] = Depends(get_token_payload),
    session: SessionContext = Depends(get_session_context),
) -> Dict[str, Any]:
    """Admin behind the token, as long as the admin session is still open"""
    if payload.get("role") != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    admin = session.current_admin()
    if not admin or admin.get("username") != payload.get("sub"):
        raise HTTPException(status_code=401, detail="Admin session has ended, please log in again")
    return admin

# ==========================================================
# Health & System Endpoints
# ==========================================================
@app.get("/health", tags=["System"])
@limiter.limit("10/minute")
def health_check(request: Request):
    """System health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0",
        "environment": ENVIRONMENT,
        "store": store.name,
    }

@app.get("/", tags=["System"])
def root():
    """API root endpoint with available routes"""
    return {
        "service": "Civic Connect Backend API",
        "version": "1.0.0",
        "status": "running",
        "environment": ENVIRONMENT,
        "endpoints": {
            "system": {
                "health": "/health",
                "root": "/"
            },
            "auth": {
                "signup": "/auth/signup",
                "login": "/auth/login",
                "logout": "/auth/logout",
                "profile": "/auth/profile"
            },
            "complaints": {
                "create": "/api/complaints",
                "list": "/api/complaints",
                "stats": "/api/complaints/stats",
                "get_by_id": "/api/complaints/{id}",
                "categories": "/api/categories",
                "statuses": "/api/statuses"
            },
            "admin": {
                "login": "/admin/login",
                "logout": "/admin/logout",
                "complaints": "/admin/complaints",
                "update_status": "/admin/complaints/{id}/status",
                "stats": "/admin/stats",
                "divergence": "/admin/ledgers/divergence",
                "reconcile": "/admin/ledgers/reconcile"
            }
        }
    }

# ==========================================================
# Authentication Routes
# ==========================================================
@app.post("/auth/signup", response_model=TokenResponse, status_code=201, tags=["Authentication"])
@limiter.limit("5/minute")
async def signup(request: Request, user_data: SignupRequest, session: SessionContext = Depends(get_session_context)):
    """Create a citizen session"""
    if LOGIN_DELAY_SECONDS > 0:
        await asyncio.sleep(LOGIN_DELAY_SECONDS)
    user = session.signup(user_data.username, user_data.email, user_data.password)
    if not user:
        raise HTTPException(status_code=400, detail="Signup failed. Please check your details.")
    token_data = AuthService.create_access_token(username=user["username"], role=ROLE_CITIZEN)
    return TokenResponse(**token_data, user=user)

@app.post("/auth/login", response_model=TokenResponse, tags=["Authentication"])
@limiter.limit("10/minute")
async def login(request: Request, user_data: LoginRequest, session: SessionContext = Depends(get_session_context)):
    """Citizen login"""
    if LOGIN_DELAY_SECONDS > 0:
        await asyncio.sleep(LOGIN_DELAY_SECONDS)
    user = session.login_citizen(user_data.username, user_data.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    token_data = AuthService.create_access_token(username=user["username"], role=ROLE_CITIZEN)
    return TokenResponse(**token_data, user=user)

@app.post("/auth/logout", tags=["Authentication"])
def logout(
    current_user: Dict[str, Any] = Depends(get_current_user),
    session: SessionContext = Depends(get_session_context),
):
    """End the citizen session"""
    session.logout_citizen()
    return {"message": "You have been successfully logged out."}

@app.get("/auth/profile", tags=["Authentication"])
@limiter.limit("30/minute")
def get_profile(request: Request, current_user: Dict[str, Any] = Depends(get_current_user)):
    """Get current citizen session record"""
    return current_user

@app.post("/admin/login", response_model=TokenResponse, tags=["Admin"])
@limiter.limit("3/minute")
async def admin_login(request: Request, admin_data: AdminLoginRequest, session: SessionContext = Depends(get_session_context)):
    """Admin login endpoint"""
    if LOGIN_DELAY_SECONDS > 0:
        await asyncio.sleep(LOGIN_DELAY_SECONDS)
    admin = session.login_admin(admin_data.username, admin_data.password)
    if not admin:
        raise HTTPException(status_code=401, detail="Invalid admin credentials. Please try again.")
    token_data = AuthService.create_access_token(username=admin["username"], role=ROLE_ADMIN)
    return TokenResponse(**token_data, user=admin)

@app.post("/admin/logout", tags=["Admin"])
def admin_logout(
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    session: SessionContext = Depends(get_session_context),
):
    """End the admin session"""
    session.logout_admin()
    return {"message": "Admin session ended successfully."}

# ==========================================================
# Complaint Routes
# ==========================================================
@app.get("/api/categories", tags=["Categories"])
@limiter.limit("60/minute")
def get_categories(request: Request):
    """Get all available complaint categories"""
    return [{"label": label, "value": normalize_category(label)} for label in CATEGORIES]

@app.get("/api/statuses", tags=["Categories"])
def get_statuses():
    """Status values with their display glyph and color"""
    return [{"value": status, **status_display(status)} for status in STATUS_VALUES]

@app.post("/api/complaints", response_model=ComplaintResponse, status_code=201, tags=["Complaints"])
@limiter.limit("10/minute")
async def create_complaint(
    request: Request,
    req: ComplaintCreateRequest,
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Submit a complaint; it lands in both the citizen and the admin ledger"""
    if SUBMIT_DELAY_SECONDS > 0:
        await asyncio.sleep(SUBMIT_DELAY_SECONDS)
    try:
        complaint = service.create_complaint(
            name=req.name,
            address=req.address,
            phone=req.phone,
            category=req.category,
            description=req.description,
            image=req.image,
        )
        return to_response(complaint)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Create complaint error: {e}")
        raise HTTPException(status_code=500, detail="Failed to create complaint")

@app.get("/api/complaints", response_model=List[ComplaintResponse], tags=["Complaints"])
@limiter.limit("30/minute")
def list_complaints(
    request: Request,
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Citizen ledger, oldest first"""
    try:
        return [to_response(c) for c in service.list_complaints(USER_LEDGER)]
    except Exception as e:
        logger.error(f"List complaints error: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve complaints")

@app.get("/api/complaints/stats", tags=["Complaints"])
def citizen_stats(
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Dashboard counters for the citizen ledger"""
    return service.get_stats(USER_LEDGER)

@app.get("/api/complaints/{complaint_id}", response_model=ComplaintResponse, tags=["Complaints"])
@limiter.limit("60/minute")
def get_complaint_by_id(
    request: Request,
    complaint_id: str = PathParam(..., description="Complaint ID"),
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Get a specific complaint from the citizen ledger"""
    complaint = service.get_complaint(complaint_id, USER_LEDGER)
    if not complaint:
        raise HTTPException(status_code=404, detail="Complaint not found")
    return to_response(complaint)

# ==========================================================
# Admin Routes
# ==========================================================
@app.get("/admin/complaints", response_model=List[ComplaintResponse], tags=["Admin"])
@limiter.limit("100/minute")
def admin_list_complaints(
    request: Request,
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    service: LedgerService = Depends(get_ledger_service),
    status: Optional[str] = Query(None, description="Filter by status, or 'all'")
):
    """Admin ledger with optional status filter"""
    try:
        return [to_response(c) for c in service.list_complaints(ADMIN_LEDGER, status)]
    except Exception as e:
        logger.error(f"Admin list complaints error: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve complaints")

@app.patch("/admin/complaints/{complaint_id}/status", response_model=ComplaintResponse, tags=["Admin"])
@limiter.limit("60/minute")
def admin_update_complaint_status(
    request: Request,
    complaint_id: str = PathParam(..., description="Complaint ID"),
    status_update: ComplaintStatusUpdate = ...,
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Change a complaint's status in both ledgers"""
    try:
        updated_complaint = service.update_status(complaint_id, status_update.status)
        if not updated_complaint:
            raise HTTPException(status_code=404, detail="Complaint not found")
        logger.info(f"Complaint status changed to {updated_complaint.status} - ID: {complaint_id}")
        return to_response(updated_complaint)
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Admin update status error: {e}")
        raise HTTPException(status_code=500, detail="Failed to update complaint status")

@app.get("/admin/stats", tags=["Admin"])
@limiter.limit("30/minute")
def admin_get_stats(
    request: Request,
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Dashboard counters for the admin ledger"""
    return {
        **service.get_stats(ADMIN_LEDGER),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/admin/ledgers/divergence", tags=["Admin"])
def admin_ledger_divergence(
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Report records that differ between the citizen and admin ledgers"""
    return service.find_divergence()

@app.post("/admin/ledgers/reconcile", tags=["Admin"])
def admin_reconcile_ledgers(
    body: Optional[ReconcileRequest] = None,
    admin_user: Dict[str, Any] = Depends(get_admin_user),
    service: LedgerService = Depends(get_ledger_service),
):
    """Copy one ledger's records over the others"""
    source = body.source if body else ADMIN_LEDGER
    try:
        touched = service.reconcile(source)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"source": source, "reconciled": touched}

# ==========================================================
# Error Handlers
# ==========================================================
# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "timestamp": datetime.utcnow().isoformat()
        }
    )

# ==========================================================
# Development Entry Point
# ==========================================================
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"🚀 Starting Civic Connect API on {host}:{port}")
    logger.info(f"📊 Environment: {ENVIRONMENT}")
    logger.info(f"🐛 Debug mode: {DEBUG}")
    logger.info(f"🗄️ Store backend: {store.name}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=DEBUG,
        log_level="info" if not DEBUG else "debug"
    )
