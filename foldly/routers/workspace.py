import uuid
from typing import Optional

from fastapi import APIRouter, Depends, UploadFile, File, Form, Response
from pydantic import BaseModel, Field
from starlette import status

from foldly.db.models.user import User
from foldly.dependencies import get_file_service
from foldly.services.auth_service import AuthService
from foldly.services.file_service import FileService
from foldly.utils.serialize import api_record
from foldly.utils.tree import node_to_dict

router = APIRouter(prefix="/workspace", tags=["workspace"])


class FolderCreate(BaseModel):
    name: str
    parent_id: Optional[uuid.UUID] = Field(None, alias="parentId")


class FolderRename(BaseModel):
    name: str


class FolderMove(BaseModel):
    parent_id: Optional[uuid.UUID] = Field(None, alias="parentId")


@router.get("/tree")
async def get_tree(
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "data": [node_to_dict(node) for node in await files.tree(user.id)]}


@router.post("/folders", status_code=status.HTTP_201_CREATED)
async def create_folder(
    body: FolderCreate,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    folder = await files.create_folder(user.id, body.name, body.parent_id)
    return {"success": True, "data": api_record(folder)}


@router.patch("/folders/{folder_id}")
async def rename_folder(
    folder_id: uuid.UUID,
    body: FolderRename,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    folder = await files.rename_folder(folder_id, user.id, body.name)
    return {"success": True, "data": api_record(folder)}


@router.post("/folders/{folder_id}/move")
async def move_folder(
    folder_id: uuid.UUID,
    body: FolderMove,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    folder = await files.move_folder(folder_id, user.id, body.parent_id)
    return {"success": True, "data": api_record(folder)}


@router.delete("/folders/{folder_id}")
async def delete_folder(
    folder_id: uuid.UUID,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    result = await files.delete_folder(folder_id, user.id)
    return {"success": True, "data": result.to_dict()}


@router.post("/files", status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    folder_id: Optional[uuid.UUID] = Form(None, alias="folderId"),
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    return {"success": True, "data": await files.upload_workspace_file(user.id, file, folder_id)}


@router.get("/files/{file_id}/download")
async def download_file(
    file_id: uuid.UUID,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    record, content = await files.read_file(file_id, user.id)
    return Response(
        content=content,
        media_type=record.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{record.file_name}"'},
    )


@router.delete("/files/{file_id}")
async def delete_file(
    file_id: uuid.UUID,
    files: FileService = Depends(get_file_service),
    user: User = Depends(AuthService.get_current_user),
):
    await files.delete_file(file_id, user.id)
    return {"success": True}
