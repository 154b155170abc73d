"""
Infrastructure orchestration for the progression ledger.

**ApplicationContext**: ordered startup (config, logging, storage, services,
health monitor) and reverse-order shutdown.

Usage
-----
    from src.core.infra import ApplicationContext

    context = ApplicationContext()
    await context.initialize()
    ...
    await context.shutdown()
"""

from src.core.infra.application_context import ApplicationContext

__all__ = [
    "ApplicationContext",
]
