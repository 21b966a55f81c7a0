import json
import logging
import os
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

import bcrypt
import jwt
from dotenv import load_dotenv

from db import StoreAdapter, info_logger, error_logger

# Load environment variables
load_dotenv()

# Configuration
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "civic-connect-dev-secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_MINUTES = int(os.getenv("JWT_EXPIRATION_MINUTES", "30"))

# Session record keys
USER_SESSION_KEY = "civic_user"
ADMIN_SESSION_KEY = "civic_admin"

ROLE_ADMIN = "admin"
ROLE_CITIZEN = "citizen"

logger = logging.getLogger(__name__)


class AuthService:
    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt"""
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    @staticmethod
    def verify_password(password: str, hashed_password: str) -> bool:
        """Verify password against hash"""
        return bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))

    @staticmethod
    def create_access_token(username: str, role: str) -> Dict[str, Any]:
        """Create JWT access token"""
        now = datetime.utcnow()
        expires_at = now + timedelta(minutes=JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": username,
            "role": role,
            "iat": now,
            "exp": expires_at,
            "type": "access"
        }

        token = jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)

        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_in": JWT_EXPIRATION_MINUTES * 60
        }

    @staticmethod
    def decode_token(token: str) -> Dict[str, Any]:
        """Decode and verify JWT token"""
        try:
            payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
            return payload
        except jwt.ExpiredSignatureError:
            raise ValueError("Token has expired")
        except jwt.InvalidTokenError:
            raise ValueError("Invalid token")


# ==========================================================
# Authentication
# ==========================================================
class Authenticator:
    """Turns credentials into an identity, or None when they are rejected"""

    def authenticate(self, credentials: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class AdminCredentialAuthenticator(Authenticator):
    """Accepts exactly one configured admin username/password pair"""

    def __init__(self, username: str = ADMIN_USERNAME, password: str = ADMIN_PASSWORD):
        self.username = username
        self._password_hash = AuthService.hash_password(password)

    def authenticate(self, credentials: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        username = credentials.get("username") or ""
        password = credentials.get("password") or ""
        if username != self.username:
            return None
        try:
            if not AuthService.verify_password(password, self._password_hash):
                return None
        except ValueError:
            # bcrypt refuses passwords over 72 bytes
            return None
        return {"username": username, "role": ROLE_ADMIN}


class CitizenAuthenticator(Authenticator):
    """Citizens have no accounts; any non-empty username and password get in"""

    def authenticate(self, credentials: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        username = (credentials.get("username") or "").strip()
        password = credentials.get("password") or ""
        if not username or not password:
            return None
        identity = {"username": username}
        if credentials.get("email"):
            identity["email"] = credentials["email"]
        return identity


# ==========================================================
# Session context
# ==========================================================
def _read_record(store: StoreAdapter, key: str) -> Optional[Dict[str, Any]]:
    raw = store.read(key)
    if not raw:
        return None
    try:
        record = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        error_logger.error(f"SYSTEM_ERROR: Malformed session record ignored - Key: {key}")
        return None
    if not isinstance(record, dict) or not record.get("username"):
        return None
    return record


class SessionContext:
    """Who is signed in to this store context, as citizen and/or admin"""

    def __init__(
        self,
        store: StoreAdapter,
        admin_authenticator: Optional[Authenticator] = None,
        citizen_authenticator: Optional[Authenticator] = None,
    ):
        self.store = store
        self.admin_authenticator = admin_authenticator or AdminCredentialAuthenticator()
        self.citizen_authenticator = citizen_authenticator or CitizenAuthenticator()

    def login_admin(self, username: str, password: str) -> Optional[Dict[str, Any]]:
        info_logger.info(f"SYSTEM_INFO: Admin authentication attempt - Username: {username}")
        identity = self.admin_authenticator.authenticate({"username": username, "password": password})

        if not identity:
            logger.warning(f"❌ Admin authentication failed for: {username}")
            error_logger.error(f"SYSTEM_ERROR: Authentication failed - Invalid admin credentials for Username: {username}")
            return None

        record = {"username": identity["username"], "role": ROLE_ADMIN}
        self.store.write(ADMIN_SESSION_KEY, json.dumps(record))
        logger.info(f"✅ Admin authentication successful for: {username}")
        info_logger.info(f"SYSTEM_INFO: Admin session started - Username: {username}")
        return record

    def login_citizen(self, username: str, password: str, email: Optional[str] = None) -> Optional[Dict[str, Any]]:
        info_logger.info(f"SYSTEM_INFO: User authentication attempt - Username: {username}")
        identity = self.citizen_authenticator.authenticate(
            {"username": username, "password": password, "email": email}
        )

        if not identity:
            logger.warning(f"❌ Authentication failed for: {username}")
            error_logger.error(f"SYSTEM_ERROR: Authentication failed - Invalid credentials for Username: {username}")
            return None

        record = {"username": identity["username"]}
        if identity.get("email"):
            record["email"] = identity["email"]
        self.store.write(USER_SESSION_KEY, json.dumps(record))
        info_logger.info(f"SYSTEM_INFO: User session started - Username: {record['username']}")
        return record

    def signup(self, username: str, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Sign up and sign in in one step; nothing besides the session is kept"""
        return self.login_citizen(username, password, email=email)

    def logout_admin(self) -> None:
        self.store.clear(ADMIN_SESSION_KEY)
        info_logger.info("SYSTEM_INFO: Admin session ended")

    def logout_citizen(self) -> None:
        self.store.clear(USER_SESSION_KEY)
        info_logger.info("SYSTEM_INFO: User session ended")

    def current_admin(self) -> Optional[Dict[str, Any]]:
        record = _read_record(self.store, ADMIN_SESSION_KEY)
        if record and record.get("role") != ROLE_ADMIN:
            return None
        return record

    def current_user(self) -> Optional[Dict[str, Any]]:
        return _read_record(self.store, USER_SESSION_KEY)
