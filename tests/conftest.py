import os

# prima di importare app.*: niente Postgres, niente email
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EMAIL_ENABLED"] = "0"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import EngineConfig
from app.db import get_db
from app.deps import get_engine_config
from app.main import app
from app.security import create_user_token
from models import Base
from models.affiliates import Affiliate, AffiliateStatus
from models.orders import Order, OrderStatus, PackageType, PaymentStatus, WORKFLOW_STAGES
from models.promo_codes import PromoCode, PromoCodeKind
from models.users import User

COOKIE_SECRET = "test-cookie-secret"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite: SAVEPOINT funziona solo se la transazione la apriamo noi.
    # StaticPool = una sola connessione condivisa da test e client: un solo BEGIN.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        if not conn.connection.dbapi_connection.in_transaction:
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def config():
    return EngineConfig(cookie_secret=COOKIE_SECRET)


@pytest.fixture()
def client(session_factory, config):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_engine_config] = lambda: config
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# -------------------------------------------------
# Factories
# -------------------------------------------------
@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(email=None, name=None, is_admin=False):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            name=name or f"User {counter['n']}",
            is_admin=is_admin,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_affiliate(db, make_user):
    counter = {"n": 0}

    def _make(user=None, status=AffiliateStatus.APPROVED, rate="10", with_code=True, code=None):
        counter["n"] += 1
        user = user or make_user()
        affiliate = Affiliate(
            user_id=user.id,
            status=status,
            commission_rate=Decimal(rate),
            payout_threshold=Decimal("10.00"),
        )
        db.add(affiliate)
        db.flush()
        if with_code:
            db.add(
                PromoCode(
                    code=code or f"SONGAFF{counter['n']:02d}",
                    name=f"{user.name}'s Affiliate Code",
                    kind=PromoCodeKind.AFFILIATE,
                    affiliate_id=affiliate.id,
                    discount_value=Decimal(rate),
                    is_percentage=True,
                    is_active=True,
                )
            )
        db.commit()
        db.refresh(affiliate)
        return affiliate

    return _make


@pytest.fixture()
def make_promo(db):
    def _make(code, discount_value, is_percentage=True, **fields):
        promo = PromoCode(
            code=code,
            name=fields.pop("name", code),
            kind=PromoCodeKind.DISCOUNT,
            discount_value=Decimal(str(discount_value)),
            is_percentage=is_percentage,
            min_order_value=Decimal(str(fields.pop("min_order_value", "0"))),
            max_uses=fields.pop("max_uses", 0),
            max_uses_per_user=fields.pop("max_uses_per_user", 0),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo

    return _make


@pytest.fixture()
def make_order(db, make_user):
    counter = {"n": 0}

    def _make(user=None, status=OrderStatus.PENDING, **fields):
        counter["n"] += 1
        user = user or make_user()
        order = Order(
            order_number=fields.pop("order_number", f"ORD-TEST-{counter['n']:03d}"),
            user_id=user.id,
            package_type=fields.pop("package_type", PackageType.SIGNATURE),
            original_price=Decimal(str(fields.pop("original_price", "199.99"))),
            total_price=Decimal(str(fields.pop("total_price", "199.99"))),
            payment_status=fields.pop("payment_status", PaymentStatus.PAID),
            status=status,
            workflow_stage=WORKFLOW_STAGES[status],
            **fields,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture()
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_user_token(user.id)}"}

    return _headers
