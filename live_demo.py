#!/usr/bin/env python
"""
PLANTVAULT LIVE DEMO

Scripted walkthrough of the authentication core against in-memory
storage with MFA debug mode on (codes are echoed instead of mailed):
- Registration: email code, then authenticator setup
- Login with password + TOTP second factor
- Token refresh and logout
- Password reset by link
- Hash-chained security ledger replay

Run with --auto to skip the pauses.
"""

import sys

from plantvault.auth import AuthService
from plantvault.config import Settings
from plantvault.errors import AuthError, dispatch
from plantvault.logging_config import setup_logging
from plantvault.notifications import LoggingEmailSender
from plantvault.storage import MemoryStorage

AUTO = '--auto' in sys.argv


def print_header(title):
    """Print a formatted section header"""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_step(step_num, description):
    """Print a numbered step"""
    print(f"\n  [{step_num}] {description}")


def pause(message="Press ENTER to continue..."):
    if AUTO:
        return
    print(f"\n  [PAUSE] {message}")
    input()


def main():
    setup_logging("WARNING")
    settings = Settings(
        jwt_secret="demo-access-secret",
        jwt_refresh_secret="demo-refresh-secret",
        mfa_totp_encryption_key="demo-totp-encryption-key",
        mfa_debug_mode=True,
        storage_backend="memory",
        argon2_time_cost=1,
        argon2_memory_cost=8192,
    )
    outbox = LoggingEmailSender()
    service = AuthService(settings, MemoryStorage(), email_sender=outbox)
    service.initialize()

    print("\n  PLANTVAULT - GREENHOUSE ACCOUNT SECURITY")
    print("  Argon2id passwords, email + TOTP MFA, JWT sessions, audit ledger")
    pause("Press ENTER to begin the demonstration...")

    print_header("PART 1: REGISTRATION")

    print_step("1.1", "Weak password is rejected")
    status, body = dispatch(service.register, "alice@example.com", "password123")
    print(f"  Status: {status}  Message: {body['message']}")

    print_step("1.2", "Register alice@example.com")
    password = "AliceGreen@2024!"
    started = service.register("Alice@Example.com ", password, full_name="Alice", consent=True)
    print(f"  Challenge: {started['challengeId'][:16]}...  expires {started['expiresAt']}")
    print(f"  Emailed code (debug): {started['debugCode']}")
    pause()

    print_step("1.3", "Confirm the email code")
    setup = service.confirm_registration_email(started['challengeId'], started['debugCode'])
    print(f"  Authenticator secret: {setup['secret']}")
    print(f"  Provisioning URI: {setup['uri'][:60]}...")
    pause()

    print_step("1.4", "Finalize with the first authenticator code")
    code = service.totp.current_code(setup['secret'])
    user = service.finalize_registration(setup['otpSetupId'], code)
    print(f"  [OK] User {user['email']} created with role {user['role']}")
    pause()

    print_header("PART 2: LOGIN WITH MFA")

    print_step("2.1", "Wrong password")
    status, body = dispatch(service.login, "alice@example.com", "Wrong@Pass123")
    print(f"  Status: {status}  Message: {body['message']}")

    print_step("2.2", "Correct password opens an MFA session")
    session = service.login("alice@example.com", password, ip_address="192.168.1.100")
    print(f"  Session: {session['sessionId'][:16]}...  methods: {sorted(session['methods'])}")

    print_step("2.3", "Complete with the authenticator code")
    service.initiate_mfa(session['sessionId'], 'otp')
    result = service.complete_mfa(session['sessionId'], 'otp',
                                  service.totp.current_code(setup['secret']))
    tokens = result['tokens']
    print(f"  Access token: {tokens['access']['token'][:30]}...")
    print(f"  Refresh token: {tokens['refresh']['token'][:30]}...")

    principal = service.authenticate("Bearer " + tokens['access']['token'])
    print(f"  [OK] Authenticated as {principal['email']} ({principal['role']})")
    pause()

    print_header("PART 3: REFRESH AND LOGOUT")

    refreshed = service.refresh_session(tokens['refresh']['token'])
    print("  [OK] Refresh issued a new token pair")

    new_tokens = refreshed['tokens']
    access_claims = service.tokens.verify_access_token(new_tokens['access']['token'])
    service.revoke_session(refresh_token=new_tokens['refresh']['token'],
                           access_jti=access_claims['jti'],
                           user_id=principal['id'],
                           access_expires_at=access_claims['exp'])
    try:
        service.authenticate("Bearer " + new_tokens['access']['token'])
    except AuthError as exc:
        print(f"  [X] Revoked access token rejected: {exc.message}")
    pause()

    print_header("PART 4: PASSWORD RESET")

    service.request_password_reset("alice@example.com")
    kind, recipients = outbox.sent[-1]
    print(f"  Reset link sent ({kind}) to {recipients}")
    reset_token = service.tokens.issue_password_reset_token(principal['id'])[0]
    service.confirm_password_reset(reset_token, "AliceNew@2025!")
    print("  [OK] Password replaced; the link cannot be used twice")
    pause()

    print_header("PART 5: SECURITY LEDGER")

    for entry in reversed(service.list_security_logs(limit=10)):
        print(f"  #{entry['sequence']:>3}  {entry['action']}")
    chain = service.verify_security_log()
    print(f"\n  [OK] Chain valid: {chain['valid']} ({chain['entries']} entries)")

    service.close()
    print("\n  Demo complete.\n")


if __name__ == "__main__":
    main()
