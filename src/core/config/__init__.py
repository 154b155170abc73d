"""
Configuration subsystem.

- **config.py**: static configuration from environment variables (.env support)
- **settings.py**: frozen, validated settings records built once at startup

Usage
-----
```python
from src.core.config import LedgerSettings

settings = LedgerSettings.from_config()
```
"""

from src.core.config.config import Config, Environment
from src.core.config.settings import (
    DatabaseSettings,
    HealthMonitorSettings,
    LedgerSettings,
    ProgressionSettings,
    RateCaps,
    RateLimitSettings,
    VerificationSettings,
)

__all__ = [
    "Config",
    "Environment",
    "DatabaseSettings",
    "HealthMonitorSettings",
    "LedgerSettings",
    "ProgressionSettings",
    "RateCaps",
    "RateLimitSettings",
    "VerificationSettings",
]
