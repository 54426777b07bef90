import logging
from functools import lru_cache
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, crud, identity, models, reconcile, schemas
from .auth import create_access_token, decode_access_token
from .db import Base, SessionLocal, engine
from .entitlements import has_access, has_permission
from .errors import GatewayError, InvalidCredentials, MembershipConflict, NotFoundError
from .gateway import AlipayGateway
from .logging_setup import configure_logging
from .plans import CATALOG
from .utils import sanitize_input

configure_logging(config.get_settings())
logger = logging.getLogger(__name__)

# Create tables if not existing. Existing databases are upgraded by migration/.
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Membership Portal")


# Dependency to get DB session per request

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def _build_gateway() -> AlipayGateway:
    return AlipayGateway.from_settings(config.get_settings())


def get_optional_gateway() -> Optional[AlipayGateway]:
    try:
        return _build_gateway()
    except GatewayError as e:
        logger.error("payment gateway unavailable: %s", e)
        return None


def get_gateway(gateway=Depends(get_optional_gateway)):
    if gateway is None:
        raise HTTPException(status_code=503, detail="payment gateway unavailable")
    return gateway


def get_current_profile(authorization: Optional[str] = Header(default=None), db: Session = Depends(get_db)) -> models.Profile:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = authorization.split(None, 1)[1]
    try:
        payload = decode_access_token(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="invalid token")
    profile = crud.get_profile(db, str(payload.get("sub")))
    if not profile:
        raise HTTPException(status_code=401, detail="unknown user")
    return profile


def require_admin(profile: models.Profile = Depends(get_current_profile)) -> models.Profile:
    # role on the profile row is the only authority; the token claim is informational
    if profile.role != "admin":
        raise HTTPException(status_code=403, detail="forbidden: admin required")
    return profile


def require_paid_access(feature: str, profile: models.Profile = Depends(get_current_profile)) -> models.Profile:
    if not has_permission(profile, feature):
        raise HTTPException(status_code=403, detail="membership required")
    return profile


def _ensure_owner_or_admin(acting: models.Profile, user_id: str):
    if acting.role != "admin" and acting.user_id != user_id:
        raise HTTPException(status_code=403, detail="forbidden")


def _order_error(status_code: int, error: str, order_id: Optional[str] = None) -> JSONResponse:
    # order endpoints answer failures as {"error": ..., "orderId": ...}
    body = {"error": error}
    if order_id:
        body["orderId"] = order_id
    return JSONResponse(body, status_code=status_code)


@app.get("/health")
async def health():
    return {"status": "ok"}


# -------------------- Identity --------------------

@app.post("/api/auth/register", response_model=schemas.TokenResponse, status_code=201)
async def register(payload: schemas.RegisterRequest, db: Session = Depends(get_db)):
    try:
        user = identity.sign_up(db, payload.email, payload.password, username=payload.username)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    token = create_access_token(user.id, user.profile.role)
    return schemas.TokenResponse(access_token=token, user_id=user.id)


@app.post("/api/auth/login", response_model=schemas.TokenResponse)
async def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    try:
        user = identity.sign_in_with_password(db, payload.email, payload.password)
    except InvalidCredentials:
        raise HTTPException(status_code=401, detail="invalid credentials")
    token = create_access_token(user.id, user.profile.role)
    return schemas.TokenResponse(access_token=token, user_id=user.id)


@app.get("/api/auth/me", response_model=schemas.MeRead)
async def me(profile: models.Profile = Depends(get_current_profile)):
    data = schemas.ProfileRead.model_validate(profile).model_dump()
    return schemas.MeRead(**data, has_access=has_access(profile))


@app.post("/api/auth/confirm-virtual-email")
async def confirm_virtual_email(
    payload: schemas.ConfirmEmailRequest,
    admin: models.Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        user = identity.confirm_email(db, payload.user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "userId": user.id, "emailConfirmedAt": user.email_confirmed_at}


# -------------------- Entitlements --------------------

@app.get("/api/entitlements", response_model=schemas.EntitlementRead)
async def entitlements(feature: Optional[str] = Query(default=None, max_length=64), profile: models.Profile = Depends(get_current_profile)):
    return schemas.EntitlementRead(
        feature=feature,
        has_access=has_access(profile),
        has_permission=has_permission(profile, feature or ""),
    )


@app.get("/api/features/{feature}")
async def feature_gate(feature: str, profile: models.Profile = Depends(require_paid_access)):
    return {"feature": feature, "granted": True}


# -------------------- Orders & payment --------------------

@app.get("/api/plans", response_model=List[schemas.PlanRead])
async def plans():
    return [schemas.PlanRead(plan=p.plan, price=p.price, description=p.description) for p in CATALOG.values()]


@app.post(
    "/api/alipay/create-order",
    response_model=schemas.CreateOrderResponse,
    response_model_exclude_none=True,
    status_code=201,
)
async def create_order(
    payload: schemas.CreateOrderRequest,
    acting: models.Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
):
    _ensure_owner_or_admin(acting, payload.user_id)
    try:
        artifact = reconcile.create_order(
            db,
            gateway,
            payload.user_id,
            payload.amount,
            payload.order_type,
            subject=payload.subject,
            return_url=payload.return_url,
            notify_url=payload.notify_url,
        )
    except NotFoundError as e:
        return _order_error(404, str(e))
    except ValueError as e:
        return _order_error(400, str(e))
    except GatewayError as e:
        return _order_error(502, "payment gateway request failed", e.order_id)
    except SQLAlchemyError:
        logger.exception("order creation failed for user %s", payload.user_id)
        return _order_error(500, "order could not be created")
    return schemas.CreateOrderResponse(
        order_id=artifact.order_id, qr_code_url=artifact.qr_code_url, form=artifact.form
    )


@app.post("/api/alipay/notify", response_class=PlainTextResponse)
async def alipay_notify(request: Request, db: Session = Depends(get_db), gateway=Depends(get_optional_gateway)):
    if gateway is None:
        return PlainTextResponse(reconcile.FAIL, status_code=503)
    try:
        form = await request.form()
    except Exception as e:
        logger.warning("unreadable gateway notification: %s", e)
        return PlainTextResponse(reconcile.FAIL, status_code=400)
    payload = reconcile.parse_callback_payload(form.multi_items())
    result = reconcile.handle_gateway_callback(db, gateway, payload)
    return PlainTextResponse(result, status_code=200 if result == reconcile.SUCCESS else 400)


@app.get("/api/orders/{order_id}", response_model=schemas.OrderRead)
async def get_order(order_id: str, acting: models.Profile = Depends(get_current_profile), db: Session = Depends(get_db)):
    order = crud.get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    _ensure_owner_or_admin(acting, order.user_id)
    return order


@app.post(
    "/api/orders/{order_id}/artifact",
    response_model=schemas.CreateOrderResponse,
    response_model_exclude_none=True,
)
async def renew_artifact(
    order_id: str,
    payload: schemas.ArtifactRequest,
    acting: models.Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
):
    order = crud.get_order(db, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="order not found")
    _ensure_owner_or_admin(acting, order.user_id)
    try:
        artifact = reconcile.request_payment_artifact(
            db, gateway, order_id, return_url=payload.return_url, notify_url=payload.notify_url
        )
    except ValueError as e:
        return _order_error(409, str(e), order_id)
    except GatewayError:
        return _order_error(502, "payment gateway request failed", order_id)
    return schemas.CreateOrderResponse(
        order_id=artifact.order_id, qr_code_url=artifact.qr_code_url, form=artifact.form
    )


# -------------------- Administration --------------------

@app.get("/api/admin/orders", response_model=List[schemas.OrderRead])
async def admin_orders(
    status: Optional[str] = Query(default=None, pattern="^(pending|completed|failed)$"),
    admin: models.Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return crud.list_orders(db, status=status)


@app.post("/api/admin/orders/{order_id}/approve", response_model=schemas.OrderRead)
async def admin_approve_order(
    order_id: str,
    payload: schemas.ApproveRequest,
    admin: models.Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        return reconcile.approve_order(db, order_id, trade_id=payload.trade_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/api/admin/profiles", response_model=List[schemas.ProfileRead])
async def admin_profiles(
    q: str = Query("", min_length=0, max_length=100),
    admin: models.Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return crud.list_profiles(db, q=sanitize_input(q) or None)


@app.post("/api/admin/memberships", response_model=schemas.ProfileRead)
async def admin_activate_membership(
    payload: schemas.ManualActivateRequest,
    admin: models.Profile = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        return reconcile.manual_activate(db, payload.identifier, payload.plan, force=payload.force)
    except MembershipConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/admin/stats", response_model=schemas.StatsRead)
async def admin_stats(admin: models.Profile = Depends(require_admin), db: Session = Depends(get_db)):
    return crud.order_stats(db)
