"""Ingress rules of the tunnel process."""

from .config import CATCH_ALL_SERVICE, IngressConfig, IngressRule
from .writer import IngressConfigWriter

__all__ = ["IngressConfigWriter", "IngressConfig", "IngressRule", "CATCH_ALL_SERVICE"]
