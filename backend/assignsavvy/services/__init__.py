"""AssignSavvy Services"""

from .container import CreditServices, build_services

__all__ = ["CreditServices", "build_services"]
