"""
Maintenance commands for the TaskPilot database.

Usage:
    python scripts/db_manager.py list-users
    python scripts/db_manager.py delete-user <id>
    python scripts/db_manager.py delete-all-workers [--yes]
    python scripts/db_manager.py reset-admin
"""
import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from taskpilot.db import Base, SessionLocal, engine
from taskpilot.config import settings
from taskpilot.seed import seed_default_admin
from taskpilot.services.errors import TaskPilotError
from taskpilot.services.users import UserStore
from taskpilot.services.work_items import WorkItemStore


def list_users(db) -> int:
    users = UserStore(db).find_all()
    work_items = WorkItemStore(db)
    if not users:
        print("No users found")
        return 0
    print(f"{'ID':>5}  {'ROLE':<7} {'ACTIVE':<7} {'TASKS':>5}  EMAIL (NAME)")
    for user in users:
        tasks = work_items.count(worker_id=user.id)
        active = "yes" if user.is_active else "no"
        print(f"{user.id:>5}  {user.role:<7} {active:<7} {tasks:>5}  {user.email} ({user.name})")
    print(f"\nTotal: {len(users)} users")
    return 0


def delete_user(db, user_id: int) -> int:
    store = UserStore(db)
    user = store.find_by_id(user_id)
    if user is None:
        print(f"[ERROR] User {user_id} not found")
        return 1
    email = user.email
    removed = store.delete(user_id)
    print(f"[OK] Deleted {email} and {removed} work item(s)")
    return 0


def delete_all_workers(db, assume_yes: bool) -> int:
    store = UserStore(db)
    count = store.count(role="worker")
    if count == 0:
        print("No workers to delete")
        return 0
    if not assume_yes:
        answer = input(f"Delete {count} worker(s) and all their work items? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return 1
    removed = store.delete_all_workers()
    print(f"[OK] Deleted {removed} worker(s)")
    return 0


def reset_admin(db) -> int:
    admin = seed_default_admin(db, reset_password=True)
    print(f"[OK] Admin {admin.email} ready (password reset to the configured default)")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="TaskPilot database maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list-users", help="List every user with role and task count")
    p_delete = sub.add_parser("delete-user", help="Delete a user and their work items")
    p_delete.add_argument("user_id", type=int)
    p_workers = sub.add_parser("delete-all-workers", help="Delete every worker account")
    p_workers.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    sub.add_parser("reset-admin", help="Create or reset the default admin account")
    args = parser.parse_args(argv)

    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        if args.command == "list-users":
            return list_users(db)
        if args.command == "delete-user":
            return delete_user(db, args.user_id)
        if args.command == "delete-all-workers":
            return delete_all_workers(db, args.yes)
        return reset_admin(db)
    except TaskPilotError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
