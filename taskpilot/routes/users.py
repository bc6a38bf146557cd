from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from ..db import get_db
from ..models.models import User, UserRole
from ..auth.principal import Principal
from ..auth.security import get_current_user, require_admin
from ..schemas.auth import UserOut
from ..schemas.users import AdminUserUpdate, ProfileResponse, ProfileUpdate, UserStats
from ..services.errors import NotFoundError, ValidationError
from ..services.users import UserStore


router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("", response_model=List[UserOut])
@router.get("/", response_model=List[UserOut], include_in_schema=False)
def list_workers(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    """Workers only; this feeds the assignment picker."""
    return UserStore(db).find_all(role=UserRole.WORKER.value)


@router.get("/all", response_model=List[UserOut])
def list_all_users(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return UserStore(db).find_all()


@router.get("/stats", response_model=UserStats)
def user_stats(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    store = UserStore(db)
    return UserStats(
        total_users=store.count(),
        total_workers=store.count(role=UserRole.WORKER.value),
        total_admins=store.count(role=UserRole.ADMIN.value),
    )


@router.get("/profile", response_model=UserOut)
def get_profile(me: User = Depends(get_current_user)):
    return me


@router.put("/profile", response_model=ProfileResponse)
def update_profile(payload: ProfileUpdate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    changes = payload.model_dump(exclude_none=True)
    user = UserStore(db).update(me.id, changes)
    return ProfileResponse(message="Profile updated successfully", user=UserOut.model_validate(user))


@router.patch("/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: AdminUserUpdate,
    db: Session = Depends(get_db),
    me: Principal = Depends(require_admin),
):
    changes = payload.model_dump(exclude_none=True)
    if user_id == me.id and changes.get("is_active") is False:
        raise ValidationError("Cannot deactivate your own account")
    return UserStore(db).update(user_id, changes)


@router.delete("/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), me: Principal = Depends(require_admin)):
    if user_id == me.id:
        raise ValidationError("Cannot delete your own account")
    store = UserStore(db)
    if store.find_by_id(user_id) is None:
        raise NotFoundError("User not found")
    removed = store.delete(user_id)
    return {"message": "User deleted successfully", "work_items_removed": removed}
