"""
Main entry point for running cloud_voucher_sync as a module.

Usage:
    python -m cloud_voucher_sync [options] [command]

This is equivalent to running:
    python -m cloud_voucher_sync.sync [options] [command]
"""
import sys
from .sync import main

if __name__ == "__main__":
    sys.exit(main())
