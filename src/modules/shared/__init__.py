"""
Shared Module

Purpose
-------
Provides the foundation shared by every domain service:
- BaseService: logging, EventBus publishing, input validation

Usage
-----
    from src.modules.shared import BaseService
"""

from __future__ import annotations

from .base_service import BaseService

__all__ = [
    "BaseService",
]
