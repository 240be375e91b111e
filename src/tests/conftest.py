"""Pytest configuration and fixtures for ledger service tests."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from cellar_tracker.models import (
    Batch,
    BatchComposition,
    BatchStage,
    BatchStatus,
    CompositionSourceType,
    Keg,
    KegStatus,
    KegType,
    Purchase,
    PurchaseItemType,
    PurchaseLineItem,
    Vessel,
    VesselStatus,
)
from cellar_tracker.models.base import Base
from cellar_tracker.services import audit_service
from cellar_tracker.utils.config import reset_config


@pytest.fixture(scope="function")
def test_db(monkeypatch):
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Points the global session factory at it
    4. Drops all tables after the test completes

    The factory patch is undone by monkeypatch even if teardown fails.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import cellar_tracker.services.database as db_module

    monkeypatch.setattr(db_module, "get_session_factory", lambda: Session)

    yield Session

    Session.remove()
    try:
        Base.metadata.drop_all(engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_db):
    """The session shared by the test and every session_scope() it triggers."""
    return test_db()


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Rebuild Config from defaults for every test."""
    for var in (
        "CELLAR_TRACKER_TRANSFER_TOLERANCE",
        "CELLAR_TRACKER_MIN_WORKING_VOLUME",
        "CELLAR_TRACKER_DEPLETION_TOLERANCE",
    ):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture(scope="function")
def audit_events():
    """Capture published audit events."""
    published = []
    audit_service.set_publisher(published.append)
    yield published
    audit_service.set_publisher(None)


# ============================================================================
# Builders
# ============================================================================


@pytest.fixture
def make_line(db_session):
    """Create a committed purchase line; returns its id."""
    counter = {"n": 0}

    def _make(
        item_type=PurchaseItemType.JUICE,
        quantity="1000",
        unit="L",
        unit_cost=None,
        lot_code=None,
        vendor_id="vendor-1",
    ):
        counter["n"] += 1
        purchase = Purchase(
            vendor_name="Orchard Supply",
            vendor_id=vendor_id,
            purchase_date=date(2024, 9, 1),
        )
        line = PurchaseLineItem(
            purchase=purchase,
            item_type=item_type,
            description=f"Lot {counter['n']}",
            lot_code=lot_code or f"LOT-{counter['n']}",
            quantity=Decimal(quantity),
            unit=unit,
            unit_cost=Decimal(unit_cost) if unit_cost is not None else None,
        )
        db_session.add_all([purchase, line])
        db_session.commit()
        return line.id

    return _make


@pytest.fixture
def make_vessel(db_session):
    """Create a committed vessel; returns its id."""
    counter = {"n": 0}

    def _make(capacity="500", status=VesselStatus.AVAILABLE, capacity_unit="L", name=None):
        counter["n"] += 1
        vessel = Vessel(
            name=name or f"Tank {counter['n']}",
            capacity=Decimal(capacity),
            capacity_unit=capacity_unit,
            status=status,
        )
        db_session.add(vessel)
        db_session.commit()
        return vessel.id

    return _make


@pytest.fixture
def make_batch(db_session):
    """Put an active batch with a composition into a vessel; returns the batch id.

    sources is a list of (line_item_id, fraction) pairs; by default one
    untracked source holds the whole batch.
    """
    counter = {"n": 0}

    def _make(vessel_id, volume, sources=None, stage=BatchStage.FERMENTING, cost=None):
        counter["n"] += 1
        volume = Decimal(volume)
        batch = Batch(
            name=f"Batch {counter['n']}",
            batch_number=f"B-{counter['n']:03d}",
            vessel_id=vessel_id,
            initial_volume=volume,
            current_volume=volume,
            status=BatchStatus.ACTIVE,
            stage=stage,
        )
        for line_item_id, fraction in sources or [(None, "1")]:
            fraction = Decimal(fraction)
            batch.compositions.append(
                BatchComposition(
                    source_type=CompositionSourceType.JUICE_PURCHASE,
                    purchase_line_item_id=line_item_id,
                    vendor_id="vendor-1",
                    lot_code=f"LOT-{line_item_id}",
                    volume=volume * fraction,
                    fraction_of_batch=fraction,
                    material_cost=Decimal(cost) * fraction if cost is not None else None,
                )
            )
        vessel = db_session.get(Vessel, vessel_id)
        vessel.status = stage.vessel_status
        db_session.add(batch)
        db_session.commit()
        return batch.id

    return _make


@pytest.fixture
def make_keg(db_session):
    """Create a committed, available keg; returns its id."""
    counter = {"n": 0}

    def _make(capacity="20", status=KegStatus.AVAILABLE):
        counter["n"] += 1
        keg = Keg(
            keg_number=f"K-{counter['n']:03d}",
            keg_type=KegType.SANKE_20L,
            capacity=Decimal(capacity),
            status=status,
        )
        db_session.add(keg)
        db_session.commit()
        return keg.id

    return _make
