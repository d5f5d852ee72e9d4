"""
api/routes/v1/users.py -- Subject lookup for any authenticated session.

Routes:
  GET /api/v1/users/{user_id}   -- a live Subject by id (NotFound when missing or soft-deleted)
"""

from fastapi import APIRouter, Depends, Request

from api.models import UserResponse
from auth.dependencies import require_session
from auth.store import UserStore
from core.errors import not_found

router = APIRouter(dependencies=[Depends(require_session)])


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str) -> UserResponse:
    users: UserStore = request.app.state.user_store
    subject = users.get_by_id(user_id)
    if subject is None:
        raise not_found("User not found")
    return UserResponse.from_subject(subject)
