"""DASVF Data Module"""

from .domain import ImageDomain

__all__ = ["ImageDomain"]
