import datetime as dt
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from foldly.db.models.user import User
from foldly.dependencies import get_link_service
from foldly.services.auth_service import AuthService
from foldly.services.link_service import LinkService, LinkInput
from foldly.utils.serialize import api_record

router = APIRouter(prefix="/links", tags=["links"])


class LinkCreate(BaseModel):
    slug: str
    title: str
    topic: Optional[str] = None
    description: Optional[str] = None
    custom_message: Optional[str] = Field(None, alias="customMessage")
    require_email: Optional[bool] = Field(None, alias="requireEmail")
    require_name: Optional[bool] = Field(None, alias="requireName")
    require_message: Optional[bool] = Field(None, alias="requireMessage")
    password: Optional[str] = None
    is_public: Optional[bool] = Field(None, alias="isPublic")
    max_files: Optional[int] = Field(None, alias="maxFiles", gt=0)
    max_file_size: Optional[int] = Field(None, alias="maxFileSize", gt=0)
    expires_at: Optional[dt.datetime] = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}


class LinkUpdate(LinkCreate):
    slug: Optional[str] = None
    title: Optional[str] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


class PasswordIn(BaseModel):
    password: str = ""


def _public(link) -> dict:
    return api_record(link, exclude=("password_hash",))


@router.get("/access/{path:path}")
async def validate_link_access(path: str, links: LinkService = Depends(get_link_service)):
    access = await links.validate_link_access(path.split("/"))
    return {"success": True, "data": access.to_dict()}


@router.post("/{link_id}/verify-password")
async def verify_link_password(
    link_id: uuid.UUID,
    body: PasswordIn,
    links: LinkService = Depends(get_link_service),
):
    return {"success": True, "isValid": await links.verify_password(link_id, body.password)}


@router.get("")
async def list_links(
    links: LinkService = Depends(get_link_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "data": await links.list_links(user.id)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_link(
    body: LinkCreate,
    links: LinkService = Depends(get_link_service),
    user: User = Depends(AuthService.get_current_user),
):
    link = await links.create_link(user.id, LinkInput(**body.model_dump()))
    return {"success": True, "data": _public(link)}


@router.patch("/{link_id}")
async def update_link(
    link_id: uuid.UUID,
    body: LinkUpdate,
    links: LinkService = Depends(get_link_service),
    user: User = Depends(AuthService.get_current_user),
):
    link = await links.update_link(link_id, user.id, LinkInput(**body.model_dump()))
    return {"success": True, "data": _public(link)}


@router.delete("/{link_id}")
async def delete_link(
    link_id: uuid.UUID,
    links: LinkService = Depends(get_link_service),
    user: User = Depends(AuthService.get_current_user),
):
    link = await links.delete_link(link_id, user.id)
    return {"success": True, "data": _public(link)}


@router.post("/folders/{folder_id}", status_code=status.HTTP_201_CREATED)
async def generate_folder_link(
    folder_id: uuid.UUID,
    links: LinkService = Depends(get_link_service),
    user: User = Depends(AuthService.get_current_user),
):
    link = await links.generate_link_for_folder(folder_id, user.id)
    return {"success": True, "data": _public(link)}
