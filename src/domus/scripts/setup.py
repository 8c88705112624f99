"""
Interactive setup wizard for the household sync engine.

Asks for the session handed out by the household app's sign-in (bearer
token, user id, household id) and saves it to ~/.domus/session/ with
owner-only permissions (0700 dir / 0600 file), then checks it against the
sync server.

Usage:
    python -m domus setup
    python -m domus.scripts.setup   (direct invocation)

Re-run any time the server starts rejecting the token.
"""
import asyncio
import getpass
import sys

from domus.config import get_settings
from domus.sync.session import SessionAuth
from domus.sync.transport import SyncTransport


def run_setup() -> None:
    settings = get_settings()
    auth = SessionAuth.from_settings(settings)

    print("\n🏠 Domus — Household Sync Setup\n")
    print(f"Sync server: {settings.sync_base_url}")
    print(f"Session will be stored in: {auth.session_dir}\n")

    if auth.has_session():
        print("⚠️  An existing session was found.")
        overwrite = input("Overwrite it? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing session unchanged.")
            sys.exit(0)

    token = getpass.getpass("Session token: ").strip()
    if not token:
        print("Error: token cannot be empty.")
        sys.exit(1)

    user_id = input("User id: ").strip()
    if not user_id:
        print("Error: user id cannot be empty.")
        sys.exit(1)

    household_id = input("Household id (leave empty if none): ").strip() or None

    auth.save({"token": token, "userId": user_id, "householdId": household_id})

    print("\nChecking session with the sync server...")
    if asyncio.run(_check(settings, auth)):
        print(f"\n✅ Session saved to {auth.session_dir}")
    else:
        print("\n⚠️  Session saved, but the server did not accept it (or is unreachable).")
        print("Syncs will fail until it does. Re-run:  python -m domus setup\n")


async def _check(settings, auth: SessionAuth) -> bool:
    transport = SyncTransport.from_settings(settings, auth)
    try:
        return await transport.check_session()
    finally:
        await transport.aclose()


if __name__ == "__main__":
    run_setup()
