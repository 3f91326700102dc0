# otpcore/__init__.py
"""
OTP Core — passcode verification and security-notification delivery.

Packages:
- accounts: JWT auth and the user directory
- verification: passcode engine, delivery preferences, HTTP routes
- delivery: channel adapters, delivery ledger, orchestrator
- security: audit log, security monitor, request throttle

Entry points:
- otpcore.main:app (FastAPI)
- scripts/retention_job.py (maintenance CLI)
"""

__version__ = "1.0.0"
