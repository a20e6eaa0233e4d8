"""Authentication middleware - staff JWTs carrying a role claim."""

from datetime import datetime, timedelta

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from clinic_crm.config import settings

security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"
STAFF_ROLES = ("admin", "doctor", "employee")


def create_access_token(user_id: str, role: str, email: str | None = None) -> str:
    """Create a JWT for a staff user."""
    if role not in STAFF_ROLES:
        raise ValueError(f"Unknown role: {role}")
    expire = datetime.utcnow() + timedelta(hours=settings.access_token_expire_hours)
    payload = {"sub": user_id, "email": email, "role": role, "exp": expire}
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def create_admin_token(email: str) -> str:
    return create_access_token(email, "admin", email=email)


def decode_token(credentials: HTTPAuthorizationCredentials | None) -> dict:
    """Verify a bearer JWT. Returns ``{"sub", "email", "role"}``."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not payload.get("sub") or payload.get("role") not in STAFF_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"sub": payload["sub"], "email": payload.get("email"), "role": payload["role"]}


def require_roles(*roles: str):
    """FastAPI dependency factory: the caller's role must be one of ``roles``."""

    def dependency(credentials: HTTPAuthorizationCredentials = Security(security)) -> dict:
        user = decode_token(credentials)
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail=f"Forbidden: {'/'.join(roles)} access only")
        return user

    return dependency


require_admin = require_roles("admin")
require_doctor = require_roles("doctor")
require_employee = require_roles("employee", "admin")
