"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .customer import CustomerFactory, VipCustomerFactory, DormantCustomerFactory

__all__ = [
    "CustomerFactory",
    "VipCustomerFactory",
    "DormantCustomerFactory",
]
