# create_admin.py

import os
import sys
from getpass import getpass

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from werkzeug.security import generate_password_hash  # noqa: E402

from app import app  # noqa: E402
from flask_app.models import DIRECTORY_ROLES, User, db  # noqa: E402,F401

SCOPED_ROLES = {"school_admin": "school_id", "district_admin": "district_id"}


def _prompt_role():
    choices = ", ".join(sorted(DIRECTORY_ROLES))
    role = input(f"Directory role [{choices}] (default: admin): ").strip() or "admin"
    if role not in DIRECTORY_ROLES:
        print(f"Error: Unknown directory role '{role}'.")
        sys.exit(1)
    return role


def create_admin():
    with app.app_context():
        username = input("Enter username: ").strip()
        email = input("Enter email: ").strip()

        if User.query.filter_by(username=username).first():
            print("Error: Username already exists.")
            sys.exit(1)

        if User.query.filter_by(email=email).first():
            print("Error: Email already exists.")
            sys.exit(1)

        role = _prompt_role()
        school_id = input("School id (blank for none): ").strip() or None
        district_id = input("District id (blank for none): ").strip() or None
        required = SCOPED_ROLES.get(role)
        if required and not {"school_id": school_id, "district_id": district_id}[required]:
            print(f"Error: {role} needs a {required.replace('_', ' ')}.")
            sys.exit(1)

        password = getpass("Enter password: ")
        password2 = getpass("Confirm password: ")

        if password != password2:
            print("Error: Passwords do not match.")
            sys.exit(1)

        if not password:
            print("Error: Password cannot be empty.")
            sys.exit(1)

        admin_user, error = User.safe_create(
            username=username,
            email=email,
            password_hash=generate_password_hash(password),
            is_active=True,
            is_super_admin=False,
            directory_role=role,
            school_id=school_id,
            district_id=district_id,
        )

        if error:
            print(f"Error creating admin account: {error}")
            sys.exit(1)

        print("Directory admin account created.")
        print(f"   Username: {admin_user.username}")
        print(f"   Role: {admin_user.directory_role}")
        print(f"   School: {admin_user.school_id or '-'}")
        print(f"   District: {admin_user.district_id or '-'}")


if __name__ == "__main__":
    create_admin()
