import os
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.core.permissions import Permission, has_permission
from app.db.models.revoked_token import RevokedToken
from app.db.models.user import User
from app.db.session import get_db

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def _runtime_root_admin_emails() -> set[str]:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {x.strip().lower() for x in raw.split(",") if x.strip()}


def _get_secret_key() -> str:
    secret = os.getenv("SECRET_KEY")
    if not secret:
        raise RuntimeError("SECRET_KEY is not set")
    return secret


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # malformed or foreign hash
        return False


def create_access_token(payload: dict) -> str:
    to_encode = payload.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire, "jti": uuid4().hex})
    return jwt.encode(to_encode, _get_secret_key(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, _get_secret_key(), algorithms=[ALGORITHM])


def issue_session_token(user: User) -> str:
    return create_access_token({"sub": user.email, "role": get_user_role(user), "tv": int(user.token_version)})


def generate_one_time_code(length: int = 6) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def generate_code_salt() -> str:
    return secrets.token_hex(16)


def hash_one_time_code(code: str, salt: str) -> str:
    return hmac.new(
        _get_secret_key().encode("utf-8"),
        f"{salt}:{code}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_one_time_code_hash(code: str, salt: str, code_hash: str) -> bool:
    return hmac.compare_digest(hash_one_time_code(code, salt), code_hash)


def is_token_revoked(db: Session, jti: str | None) -> bool:
    if not jti:
        return False
    return db.query(RevokedToken.id).filter(RevokedToken.jti == jti).first() is not None


def get_token_payload(token: str = Depends(oauth2_scheme)) -> dict:
    try:
        return decode_access_token(token)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def get_current_user(
    payload: dict = Depends(get_token_payload),
    db: Session = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    email = payload.get("sub")
    token_version = payload.get("tv")
    if not email or is_token_revoked(db, payload.get("jti")):
        raise credentials_exception

    user = db.query(User).filter(User.email == email).first()
    if not user or not user.is_active:
        raise credentials_exception
    if token_version is None or int(token_version) != int(user.token_version):
        raise credentials_exception
    return user


def get_user_role(user: User) -> str:
    if (getattr(user, "email", "") or "").lower() in _runtime_root_admin_emails():
        return "admin"
    return user.role or "user"


def require_permission(permission: Permission):
    def _dependency(current_user: User = Depends(get_current_user)) -> User:
        role = get_user_role(current_user)
        if not has_permission(role, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission required: {permission}",
            )
        return current_user

    return _dependency
