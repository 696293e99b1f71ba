# PlantVault Test Suite
"""
Test suite including:
- Unit tests (passwords, TOTP, cipher, tokens, challenges, ledger, storage)
- Flow tests (registration, login, account management)
- Security tests (invalid codes, lockout, tampering, enumeration)

Run with: pytest
Coverage: coverage run -m pytest && coverage report
"""
