"""
Router users : profil de l'utilisateur connecté.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_current_user
from models.user import ProfileUpdate, User
from services import order_repository

router = APIRouter()


@router.get("/me", response_model=User, summary="Mon profil")
async def get_me(current_user: dict = Depends(get_current_user)):
    return User(**current_user)


@router.patch("/me", response_model=User, summary="Modifier mon profil")
async def update_me(body: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    fields = body.model_dump(exclude_none=True)
    if not fields:
        return User(**current_user)
    updated = await order_repository.update_user(current_user["user_id"], fields)
    return User(**updated)
