# scripts/seed_admin_data.py

import os
import sys

# --- Ensure project root is on PYTHONPATH ---
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT)

from sqlalchemy import select

from models.base import get_session
from models.user import User, ROLE_ADMIN
from app.init_db import init_db
from app.security import hash_password, validate_password_strength


def run():
    email = os.getenv("ADMIN_EMAIL", "admin@example.com").strip().lower()
    password = os.getenv("ADMIN_PASSWORD", "admin12345")
    validate_password_strength(password)

    init_db()
    with get_session() as session:
        admin = session.scalar(select(User).where(User.email == email))
        if admin:
            admin.role = ROLE_ADMIN
            admin.is_active = True
        else:
            admin = User(email=email, password_hash=hash_password(password), name="Administrator", role=ROLE_ADMIN)
            session.add(admin)
        session.commit()
        session.refresh(admin)
        print("Admin user ready:", admin.user_id, admin.email)


if __name__ == "__main__":
    run()
