"""
KitchenCart - Grocery ordering automation for supplier websites without APIs
"""

__version__ = "0.1.0"
__schema_version__ = "1.0.0"  # Database schema version
