"""
Supplier Registry

Central registry for discovering and instantiating supplier adapters.
Adapters register themselves with @register_supplier when the suppliers
package is imported.
"""

from typing import Dict, List, Type

from .base import BaseSupplier, OperationContext, SupplierInfo
from .exceptions import SupplierNotFoundError


class SupplierRegistry:
    """
    Registry for managing supplier adapters, keyed by supplier code.

    Descriptors are read from the class, so listing suppliers never needs
    a credential or a browser.
    """

    _suppliers: Dict[str, Type[BaseSupplier]] = {}
    _supplier_info_cache: Dict[str, SupplierInfo] = {}

    @classmethod
    def register(cls, code: str, supplier_class: Type[BaseSupplier]):
        """Register a supplier adapter"""
        if not issubclass(supplier_class, BaseSupplier):
            raise ValueError("Supplier class must inherit from BaseSupplier")

        cls._suppliers[code.lower()] = supplier_class
        cls._supplier_info_cache.pop(code.lower(), None)

    @classmethod
    def get_supplier_class(cls, code: str) -> Type[BaseSupplier]:
        code = code.lower()
        if code not in cls._suppliers:
            raise SupplierNotFoundError(f"Supplier '{code}' not found", supplier_code=code)
        return cls._suppliers[code]

    @classmethod
    def get_supplier(cls, code: str, context: OperationContext) -> BaseSupplier:
        """Get an adapter bound to one credential's operation context"""
        return cls.get_supplier_class(code)(context)

    @classmethod
    def get_available_suppliers(cls) -> List[str]:
        """Get list of all registered supplier codes"""
        return list(cls._suppliers.keys())

    @classmethod
    def get_supplier_info(cls, code: str) -> SupplierInfo:
        code = code.lower()
        if code not in cls._supplier_info_cache:
            cls._supplier_info_cache[code] = cls.get_supplier_class(code).get_supplier_info()
        return cls._supplier_info_cache[code]

    @classmethod
    def get_all_supplier_info(cls) -> Dict[str, SupplierInfo]:
        return {code: cls.get_supplier_info(code) for code in cls.get_available_suppliers()}

    @classmethod
    def is_supplier_available(cls, code: str) -> bool:
        return code.lower() in cls._suppliers

    @classmethod
    def clear_cache(cls):
        cls._supplier_info_cache.clear()


def register_supplier(code: str):
    """Decorator for automatically registering suppliers"""

    def decorator(supplier_class: Type[BaseSupplier]):
        SupplierRegistry.register(code, supplier_class)
        return supplier_class

    return decorator


# Convenience functions for easier access
def get_supplier(code: str, context: OperationContext) -> BaseSupplier:
    return SupplierRegistry.get_supplier(code, context)


def get_available_suppliers() -> List[str]:
    return SupplierRegistry.get_available_suppliers()


def get_supplier_info(code: str) -> SupplierInfo:
    return SupplierRegistry.get_supplier_info(code)


def get_all_supplier_info() -> Dict[str, SupplierInfo]:
    return SupplierRegistry.get_all_supplier_info()


def get_supplier_registry() -> Dict[str, Type[BaseSupplier]]:
    """Get the raw supplier registry (class references)"""
    return SupplierRegistry._suppliers.copy()
