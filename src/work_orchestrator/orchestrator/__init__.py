"""Local-first orchestrator components.

- Settings loaded from .env
- Structured logging
- The transition ledger, trigger matching and chain engine (`workflow`)
- A small CLI surface
"""
