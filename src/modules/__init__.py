"""
Domain modules for the progression ledger.

- ledger: append-only event ledger and rate limiter
- ranks: the 175-position rank catalog
- progression: playtime/achievement accrual and rank promotion
- verification: whitelist verification state machine
- player: public facade composing the above
- shared: service base class
"""
