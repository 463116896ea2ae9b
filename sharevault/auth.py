from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import Settings, settings
from .schemas import User, TokenData

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

class AuthHandler:
    def __init__(self, config: Settings = settings):
        self.config = config

    def create_access_token(
        self,
        username: str,
        email: Optional[str] = None,
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.config.ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        payload = {"sub": username, "exp": expire}
        if email:
            payload["email"] = email
        return jwt.encode(payload, self.config.SECRET_KEY, algorithm=self.config.ALGORITHM)

    def decode_token(self, token: str) -> TokenData:
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
        try:
            payload = jwt.decode(
                token, self.config.SECRET_KEY, algorithms=[self.config.ALGORITHM]
            )
        except JWTError:
            raise credentials_exception
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
        return TokenData(username=username, email=payload.get("email"))

    def get_current_user(self, token: str = Depends(oauth2_scheme)) -> User:
        token_data = self.decode_token(token)
        return User(username=token_data.username, email=token_data.email)

_default_handler = AuthHandler()
create_access_token = _default_handler.create_access_token
get_current_user = _default_handler.get_current_user
