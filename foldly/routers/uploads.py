import uuid
from typing import List, Optional

from fastapi import APIRouter, UploadFile, File, Form, Depends, Request
from pydantic import BaseModel, Field
from starlette import status

from foldly.config import config
from foldly.dependencies import get_upload_service
from foldly.exceptions import InvalidInputError, InvalidIPError
from foldly.services.upload_service import UploadService, BatchRequest, DeclaredFile, LinkFileForm
from foldly.utils.security import parse_client_ip

router = APIRouter(prefix="/uploads", tags=["uploads"])


class DeclaredFileIn(BaseModel):
    name: str
    size: int = Field(ge=0)
    type: Optional[str] = None


class BatchIn(BaseModel):
    link_id: uuid.UUID = Field(alias="linkId")
    uploader_name: Optional[str] = Field(None, alias="uploaderName")
    uploader_email: Optional[str] = Field(None, alias="uploaderEmail")
    uploader_message: Optional[str] = Field(None, alias="uploaderMessage")
    folder_id: Optional[uuid.UUID] = Field(None, alias="folderId")
    password: Optional[str] = None
    files: List[DeclaredFileIn]


def client_ip(request: Request) -> Optional[str]:
    if config.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded
    return request.client.host if request.client else None


def _uuid(value: Optional[str], field: str, required: bool = True) -> Optional[uuid.UUID]:
    if not value:
        if required:
            raise InvalidInputError(f"Missing required field: {field}.")
        return None
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise InvalidInputError(f"Invalid {field}.") from e


@router.post("/batches", status_code=status.HTTP_201_CREATED)
async def start_batch(body: BatchIn, uploads: UploadService = Depends(get_upload_service)):
    data = await uploads.start_batch(BatchRequest(
        link_id=body.link_id,
        uploader_name=body.uploader_name,
        uploader_email=body.uploader_email,
        uploader_message=body.uploader_message,
        folder_id=body.folder_id,
        password=body.password,
        files=[DeclaredFile(f.name, f.size, f.type or "application/octet-stream") for f in body.files],
    ))
    return {"success": True, "data": data}


@router.post("/link-file")
async def upload_link_file(
        request: Request,
        file: Optional[UploadFile] = File(None),
        batch_id: Optional[str] = Form(None, alias="batchId"),
        file_id: Optional[str] = Form(None, alias="fileId"),
        link_id: Optional[str] = Form(None, alias="linkId"),
        folder_id: Optional[str] = Form(None, alias="folderId"),
        link_slug: Optional[str] = Form(None, alias="linkSlug"),
        link_password: Optional[str] = Form(None, alias="linkPassword"),

        uploads: UploadService = Depends(get_upload_service)
):
    ip = client_ip(request)
    if parse_client_ip(ip) is None:
        raise InvalidIPError("Could not determine the client IP address.")

    if file is None or not file.filename:
        raise InvalidInputError("Missing required field: file.")

    form = LinkFileForm(
        batch_id=_uuid(batch_id, "batchId"),
        file_id=_uuid(file_id, "fileId"),
        link_id=_uuid(link_id, "linkId"),
        folder_id=_uuid(folder_id, "folderId", required=False),
        link_slug=link_slug or None,
        link_password=link_password or None,
    )

    data = await uploads.upload_link_file(file, form, ip)
    return {"success": True, "data": data}
