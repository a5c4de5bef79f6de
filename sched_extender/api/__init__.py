"""
Extender HTTP surface: wire codec and Flask routes
"""

from .server import create_extender_api

__all__ = ['create_extender_api']
