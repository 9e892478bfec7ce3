"""
Land sales back-office engine
"""
from .engine import LandSalesEngine

__all__ = ['LandSalesEngine']
