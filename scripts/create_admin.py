import os
import re

from dotenv import load_dotenv

from passwords import hash_password, is_strong_password
from repository import DuplicateRecordError, SupabaseRepository

load_dotenv()

# ✅ Service-role credentials: this script writes straight into the users table
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_SERVICE_KEY")

ADMIN_EMAIL = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

if not SUPABASE_URL or not SUPABASE_KEY:
    raise RuntimeError(
        "SUPABASE_URL or SUPABASE_KEY is not set. "
        "Make sure they are in your .env or environment before running create_admin.py."
    )


def create_first_admin():
    if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", ADMIN_EMAIL):
        print("🚨 ADMIN_EMAIL is missing or invalid.")
        return False

    # Same policy the API enforces on sign-up and password changes
    ok, msg = is_strong_password(ADMIN_PASSWORD)
    if not ok:
        print(f"🚨 ADMIN_PASSWORD rejected: {msg}")
        return False

    repo = SupabaseRepository(SUPABASE_URL, SUPABASE_KEY)

    existing = repo.find_user_by_email(ADMIN_EMAIL)
    if existing:
        if existing.get("role") != "admin":
            repo.update_user_role(existing["id"], "admin")
            print(f"✅ Promoted existing user {ADMIN_EMAIL} to admin.")
        else:
            print(f"ℹ️ {ADMIN_EMAIL} is already an admin, nothing to do.")
        return True

    try:
        repo.insert_user({
            "email": ADMIN_EMAIL,
            "password": hash_password(ADMIN_PASSWORD),
            "role": "admin",
            "name": ADMIN_NAME,
        })
    except DuplicateRecordError:
        print(f"⚠️ {ADMIN_EMAIL} was created concurrently; run the script again to promote it.")
        return False

    print(f"✅ Admin created: {ADMIN_EMAIL}")
    return True


if __name__ == "__main__":
    create_first_admin()
