import os
import uuid
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from .errors import Unauthenticated

# Prefer JWT_SECRET but support legacy JWT_SECRET_KEY for compatibility
SECRET = os.getenv('JWT_SECRET') or os.getenv('JWT_SECRET_KEY', 'devsecret')
ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
# tokens minted by the identity provider usually carry aud=authenticated
AUDIENCE = os.getenv('JWT_AUDIENCE') or None
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv('ACCESS_TOKEN_EXPIRE_MINUTES', str(60 * 24 * 7)))

bearer = HTTPBearer(auto_error=False)

def create_access_token(data: dict, expires_delta: timedelta = None):
    """Mint a token the way the identity provider does; used by local tooling and tests"""
    to_encode = data.copy()
    if 'sub' in to_encode:
        to_encode['sub'] = str(to_encode['sub'])
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({'exp': expire})
    if AUDIENCE and 'aud' not in to_encode:
        to_encode['aud'] = AUDIENCE
    encoded = jwt.encode(to_encode, SECRET, algorithm=ALGORITHM)
    return encoded

def decode_token(token: str):
    try:
        payload = jwt.decode(token, SECRET, algorithms=[ALGORITHM], audience=AUDIENCE,
                             options={'verify_aud': AUDIENCE is not None})
        return payload
    except JWTError:
        return None

def user_from_token(token: str) -> dict:
    """Resolve the caller's identity; the user id only ever comes from a verified token"""
    payload = decode_token(token) if token else None
    if not payload or not payload.get('sub'):
        raise Unauthenticated('Invalid or expired token')
    try:
        return {'id': uuid.UUID(str(payload['sub']))}
    except ValueError:
        raise Unauthenticated('Invalid token subject')

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    if credentials is None:
        raise Unauthenticated('Not authenticated')
    return user_from_token(credentials.credentials)
