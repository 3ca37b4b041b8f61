from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import FastAPI, HTTPException, Request, status, Header
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import logging
import uuid

logger = logging.getLogger(__name__)

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "foodeli"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    PAYSTACK_SECRET_KEY: str = "sk_test_change_me"
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    WEBHOOK_SIGNATURE_HEADER: str = "x-paystack-signature"
    CLIENT_URL: str = "http://localhost:3000"
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    DUPLICATE_ORDER_WINDOW_MINUTES: int = 10
    STALE_ORDER_CLEANUP_MINUTES: int = 30
    AMOUNT_TOLERANCE: Decimal = Decimal("0.01")

    RATE_LIMIT_ENABLED: bool = True
    PAYMENT_RATE_LIMIT: str = "20/minute"

    class Config:
        env_file = ".env"

settings = Settings()


class ClientSettings(BaseSettings):
    """Timers and endpoints used by the storefront payment client."""
    API_URL: str = "http://localhost:8080"
    ORIGIN: str = "http://localhost:3000"
    CALLBACK_PATH: str = "/payment/callback"
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    MESSAGE_DEBOUNCE_SECONDS: float = 0.3
    STORAGE_POLL_SECONDS: float = 3.0
    POPUP_POLL_SECONDS: float = 1.0
    POPUP_CLOSE_GRACE_SECONDS: float = 1.0
    PAYMENT_SESSION_TIMEOUT_SECONDS: float = 600.0
    STORED_RESULT_TTL_SECONDS: float = 300.0

    VERIFY_MAX_ATTEMPTS: int = 3
    VERIFY_RETRY_DELAY_SECONDS: float = 1.0

    class Config:
        env_file = ".env"
        env_prefix = "FOODELI_CLIENT_"

    @property
    def callback_url(self) -> str:
        return f"{self.ORIGIN.rstrip('/')}{self.CALLBACK_PATH}"

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Authentication ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def verify_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Token is invalid or expired")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: Optional[str] = None
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None


# --- Exceptions ---
class AppException(HTTPException):
    error_code = "app_error"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class ValidationException(AppException):
    error_code = "validation_error"

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    error_code = "not_found"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    error_code = "unauthorized"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    error_code = "forbidden"

    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class InvalidStateException(AppException):
    error_code = "invalid_state"

    def __init__(self, detail: str = "Operation not allowed in the current state"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class AmountMismatchException(AppException):
    """Provider amount disagrees with the stored order total. Needs manual review."""
    error_code = "amount_mismatch"

    def __init__(self, detail: str = "Paid amount does not match order total"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class PaymentFailedException(AppException):
    error_code = "payment_failed"

    def __init__(self, detail: str = "Payment verification failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class GatewayException(AppException):
    """Provider or network failure. Safe for the caller to retry."""
    error_code = "gateway_error"

    def __init__(self, detail: str = "Payment provider unavailable"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)

# --- Exception Handlers ---
def setup_exception_handlers(app: FastAPI):
    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        body = ErrorResponse(message=exc.detail, error=exc.error_code)
        return JSONResponse(status_code=exc.status_code, content=body.dict(exclude_none=True), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        body = ErrorResponse(message="Invalid request", error=ValidationException.error_code, details=errors)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.dict(exclude_none=True))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc)
        body = ErrorResponse(message="Server error", error="server_error")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.dict(exclude_none=True))

# --- Decorators/Dependencies ---
async def require_auth(authorization: Optional[str] = Header(None)) -> dict:
    if not authorization:
        raise UnauthorizedException("Not authenticated - missing token")
    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        raise UnauthorizedException("Not authenticated - invalid token format")
    payload = verify_token(param)
    if not payload.get("sub"):
        raise UnauthorizedException("Token has no subject")
    return payload

async def require_admin(authorization: Optional[str] = Header(None)) -> dict:
    payload = await require_auth(authorization)
    if payload.get("role") != "admin":
        raise ForbiddenException("Access denied. Admin only.")
    return payload
