from datetime import datetime, timedelta, timezone
import bcrypt
import jwt
from fastapi import HTTPException, status
from users import User


class SecurityManager:
    def __init__(self, secret_key: str, expire_minutes: int):
        self.secret_key = secret_key
        self.algorithm = "HS256"
        self.access_token_expire_minutes = expire_minutes

    def hash_password(self, password: str) -> str:
        """Generate a salted bcrypt hash"""
        return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    def verify_password(self, password: str, hashed: str) -> bool:
        """Verify password against hash"""
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

    def create_access_token(self, user: User) -> str:
        """Create JWT access token carrying the user's identity and role"""
        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": str(user.id),
            "username": user.username,
            "is_admin": user.is_admin,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict:
        """Verify and decode JWT token"""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired"
            )
        except jwt.InvalidTokenError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token"
            )
