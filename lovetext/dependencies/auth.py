import hmac
from typing import Iterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from lovetext.core.context import AppContext
from lovetext.models.customer import Customer
from lovetext.utils.auth import verify_token


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(context: AppContext = Depends(get_context)) -> Iterator[Session]:
    db = context.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_customer_id(
    authorization: str = Header(None),
    context: AppContext = Depends(get_context),
) -> int:
    """Extract and verify the customer id from the JWT in the Authorization header."""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token"
        )
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid header format. Expected 'Bearer <token>'"
        )

    token = authorization.replace("Bearer ", "").strip()
    settings = context.settings
    payload = verify_token(token, settings.jwt_secret, settings.jwt_algorithm)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )


def get_current_customer(
    customer_id: int = Depends(get_current_customer_id),
    db: Session = Depends(get_db),
) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Customer not found"
        )
    return customer


def require_admin(
    x_admin_key: str = Header(None),
    context: AppContext = Depends(get_context),
) -> bool:
    expected = context.settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return True
