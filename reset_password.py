"""Reset an admin password from the command line.

  RESET_LOGIN=admin RESET_PASSWORD='new long password' python reset_password.py

Also clears the login lockout for that account.
"""

import os

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

MIN_PASSWORD_LENGTH = 12


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    login = (os.getenv("RESET_LOGIN") or "").strip()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not login:
        raise RuntimeError("RESET_LOGIN is required.")
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise RuntimeError(f"RESET_PASSWORD must be at least {MIN_PASSWORD_LENGTH} characters.")

    password_hash = generate_password_hash(raw_password)

    with psycopg2.connect(database_url, connect_timeout=10) as conn:
        with conn.cursor() as c:
            c.execute(
                "UPDATE admins SET password_hash = %s, is_active = TRUE WHERE LOWER(login) = LOWER(%s)",
                (password_hash, login),
            )
            updated = int(c.rowcount or 0)
            if updated:
                c.execute(
                    "DELETE FROM login_attempts WHERE endpoint = 'admin_login' AND LOWER(username) = LOWER(%s)",
                    (login,),
                )
        conn.commit()

    if updated:
        print(f"Password reset successfully for {login}.")
    else:
        print(f"No admin found for {login}.")


if __name__ == "__main__":
    main()
