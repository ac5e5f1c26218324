"""
Unit tests for seeding supplier rows from the adapter registry.
"""

from sqlmodel import select

from KitchenCart.models.supplier_models import AuthType, SupplierModel
from KitchenCart.scripts.init_suppliers import init_suppliers

SEEDED = ["chefswarehouse", "premiereproduceone", "usfoods", "whatchefswant"]


def test_seeds_one_row_per_adapter(engine, session_factory):
    codes = init_suppliers(bind=engine)

    assert codes == SEEDED
    with session_factory() as session:
        usfoods = session.exec(select(SupplierModel).where(SupplierModel.code == "usfoods")).one()
    assert usfoods.name == "US Foods"
    assert usfoods.auth_type == AuthType.TWO_FA
    assert usfoods.checkout_enabled is False


def test_rerun_refreshes_instead_of_duplicating(engine, session_factory):
    init_suppliers(bind=engine)
    with session_factory() as session:
        row = session.exec(select(SupplierModel).where(SupplierModel.code == "chefswarehouse")).one()
        row.name = "Renamed by hand"
        session.add(row)

    init_suppliers(bind=engine)

    with session_factory() as session:
        rows = session.exec(select(SupplierModel)).all()
        assert sorted(row.code for row in rows) == SEEDED
        assert next(row for row in rows if row.code == "chefswarehouse").name == "Chef's Warehouse"
