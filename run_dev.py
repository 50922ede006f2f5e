#!/usr/bin/env python
"""
Development runner for the tutorpay ledger API.
Uses an in-memory SQLite database unless DATABASE_URL is set.
"""
import logging
import os

os.environ.setdefault("DATABASE_URL", "sqlite://:memory:")

from tutorpay.main import main

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        logging.info("Ledger stopped!")
