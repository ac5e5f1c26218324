"""
Unit tests for the supplier registry and the adapter descriptors it serves.
"""

import pytest

from KitchenCart.exceptions import SupplierNotFoundError
from KitchenCart.models.supplier_models import AuthType
from KitchenCart.suppliers import SupplierRegistry, UnavailableItemPolicy


class TestSupplierRegistry:

    def test_all_adapters_registered(self):
        available = set(SupplierRegistry.get_available_suppliers())

        assert {"chefswarehouse", "usfoods", "whatchefswant", "premiereproduceone"} <= available

    @pytest.mark.parametrize("code, auth_type, minimum, policy", [
        ("chefswarehouse", AuthType.PASSWORD, 200.00, UnavailableItemPolicy.FAIL),
        ("usfoods", AuthType.TWO_FA, 250.00, UnavailableItemPolicy.FAIL),
        ("whatchefswant", AuthType.WELCOME_URL, 150.00, UnavailableItemPolicy.WARN),
        ("premiereproduceone", AuthType.TWO_FA, 0.00, UnavailableItemPolicy.WARN),
    ])
    def test_descriptors(self, code, auth_type, minimum, policy):
        info = SupplierRegistry.get_supplier_info(code)

        assert info.code == code
        assert info.auth_type == auth_type
        assert info.order_minimum == minimum
        assert info.unavailable_item_policy == policy
        assert info.live_mode_enabled is False

    def test_lookup_ignores_case(self):
        assert SupplierRegistry.get_supplier_class("USFoods").CODE == "usfoods"
        assert SupplierRegistry.is_supplier_available("ChefsWarehouse")

    def test_unknown_supplier(self):
        with pytest.raises(SupplierNotFoundError) as exc_info:
            SupplierRegistry.get_supplier_class("sysco")

        assert exc_info.value.resource_id == "sysco"

    def test_register_rejects_non_adapters(self):
        with pytest.raises(ValueError):
            SupplierRegistry.register("bogus", dict)

        assert not SupplierRegistry.is_supplier_available("bogus")

    def test_info_serializes_enums(self):
        data = SupplierRegistry.get_supplier_info("usfoods").to_dict()

        assert data["auth_type"] == "two_fa"
        assert data["unavailable_item_policy"] == "fail"
        assert data["categories"]
