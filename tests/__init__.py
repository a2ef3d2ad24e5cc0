# POS Ledger Live-Server Test Suite
#
# This package contains:
# - API tests against a running Flask server (pytest + httpx)
# - Stress/load tests on one cash drawer (Locust)
#
# Run with: python -m tests.run [smoke|full|api|stress]
