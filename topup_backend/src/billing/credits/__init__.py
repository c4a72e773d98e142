"""
Credits Module

Atomic credit balance operations.
"""

from .manager import CreditManager

__all__ = ['CreditManager']
