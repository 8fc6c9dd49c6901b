from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from core.context import get_users_service
from core.models import LoginRequest, MicrosoftProfile, UserCreate, UserSummary, UserUpdate
from services.users import InvalidCredentials, UserConflict, UserNotFound, UsersService, to_summary

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserSummary, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, service: UsersService = Depends(get_users_service)) -> UserSummary:
    try:
        return service.create(payload)
    except UserConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("", response_model=list[UserSummary])
def list_users(service: UsersService = Depends(get_users_service)) -> list[UserSummary]:
    return service.find_all()


@router.get("/{user_id}", response_model=UserSummary)
def get_user(user_id: str, service: UsersService = Depends(get_users_service)) -> UserSummary:
    try:
        return service.find_one(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.patch("/{user_id}", response_model=UserSummary)
def update_user(
    user_id: str,
    payload: UserUpdate,
    service: UsersService = Depends(get_users_service),
) -> UserSummary:
    try:
        return service.update(user_id, payload)
    except UserNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UserConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.delete("/{user_id}", response_model=dict)
def remove_user(user_id: str, service: UsersService = Depends(get_users_service)) -> dict:
    try:
        return service.remove(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/validate", response_model=UserSummary)
def validate_user(payload: LoginRequest, service: UsersService = Depends(get_users_service)) -> UserSummary:
    try:
        return service.validate_user(payload.email, payload.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


@router.post("/microsoft", response_model=UserSummary)
def validate_or_create_microsoft_user(
    payload: MicrosoftProfile,
    service: UsersService = Depends(get_users_service),
) -> UserSummary:
    try:
        return to_summary(service.validate_or_create_microsoft_user(payload))
    except UserConflict as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
