import os
import re

import bcrypt
from dotenv import load_dotenv

load_dotenv()

# ✅ Bcrypt work factor (cost)
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# ✅ Password policy, shared by the API and scripts/create_admin.py
PASSWORD_MIN_LENGTH = int(os.getenv("PASSWORD_MIN_LENGTH", "8"))


def is_strong_password(pw):
    """
    Enforce a basic password policy:
      - at least PASSWORD_MIN_LENGTH characters
      - at least one letter
      - at least one digit
    """
    if not isinstance(pw, str) or not pw:
        return False, "Password is required."

    if len(pw) < PASSWORD_MIN_LENGTH:
        return False, f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."

    if not re.search(r"[A-Za-z]", pw):
        return False, "Password must include at least one letter."

    if not re.search(r"\d", pw):
        return False, "Password must include at least one number."

    return True, ""


def hash_password(password: str) -> str:
    # ✅ Use explicit bcrypt cost
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=BCRYPT_ROUNDS),
    ).decode("utf-8")


def check_password(password: str, stored_hash) -> bool:
    if not password or not stored_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash (e.g. a legacy plaintext row): never accept it
        return False
