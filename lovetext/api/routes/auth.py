import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from lovetext.core.context import AppContext
from lovetext.core.entitlement import entitlement_summary
from lovetext.dependencies.auth import get_context, get_current_customer, get_db
from lovetext.models.customer import Customer
from lovetext.schemas.auth import CustomerCreate, CustomerLogin, CustomerResponse, TokenResponse
from lovetext.utils.auth import create_access_token, hash_password, verify_password
from lovetext.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


def _issue_token(customer: Customer, context: AppContext) -> TokenResponse:
    settings = context.settings
    token = create_access_token(
        {"sub": str(customer.id)},
        settings.jwt_secret,
        settings.jwt_algorithm,
        timedelta(minutes=settings.access_token_expire_minutes),
    )
    return TokenResponse(access_token=token, token_type="bearer")


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    email = payload.email.lower().strip()
    if db.query(Customer).filter(Customer.email == email).first():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    customer = Customer(
        name=payload.name.strip(),
        email=email,
        hashed_password=hash_password(payload.password),
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)
    logger.info("[Auth] Registered customer %s", customer.id)
    return _issue_token(customer, context)


@router.post("/login", response_model=TokenResponse)
def login(
    payload: CustomerLogin,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    customer = db.query(Customer).filter(Customer.email == payload.email.lower().strip()).first()
    if not customer or not verify_password(payload.password, customer.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )
    return _issue_token(customer, context)


@router.get("/me", response_model=CustomerResponse)
def me(customer: Customer = Depends(get_current_customer)):
    """Profile plus the entitlement the dashboard renders."""
    return CustomerResponse(
        id=customer.id,
        name=customer.name,
        email=customer.email,
        created_at=customer.created_at.isoformat() if customer.created_at else None,
        entitlement=entitlement_summary(customer, utcnow()),
    )
