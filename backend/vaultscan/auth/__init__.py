# vaultscan/auth/__init__.py
"""
Authentication modules for the vault scan service.

This package contains:
- identity.py: Canonical authenticated identity model (derived from verified JWT claims)
"""
from vaultscan.auth.identity import Identity

__all__ = ["Identity"]
