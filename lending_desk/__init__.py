"""Lending Desk - library lending service

This package contains:
- REST API endpoints (api.py)
- Lending ledger (library.py)
- CLI interface (main.py)
- Data models (book.py, user.py, borrow.py)
- Catalog store backends (database.py)
- CSV reports (reports.py)
"""

__version__ = "1.0.0"
