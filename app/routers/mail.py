from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from core.context import get_email_service
from core.models import (
    EmailConfig,
    EmailPage,
    EmailRecord,
    GetEmailsRequest,
    MailFolder,
    MoveEmailRequest,
    SendEmailRequest,
)
from services.mail import (
    EmailConfigurationError,
    EmailNotFound,
    EmailService,
    EmailServiceError,
    GraphAuthError,
    MailTransportError,
)

router = APIRouter(prefix="/users/{user_id}/email", tags=["mail"])


def _http_error(exc: EmailServiceError) -> HTTPException:
    if isinstance(exc, EmailNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, EmailConfigurationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, GraphAuthError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, MailTransportError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(exc))


def _page_request(
    folder: str = Query(default="INBOX", min_length=1),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> GetEmailsRequest:
    return GetEmailsRequest(folder=folder, page=page, limit=limit)


@router.get("/config", response_model=EmailConfig)
def get_email_config(user_id: str, service: EmailService = Depends(get_email_service)) -> EmailConfig:
    try:
        return service.get_user_email_config(user_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.put("/config", response_model=EmailConfig)
def update_email_config(
    user_id: str,
    payload: EmailConfig,
    service: EmailService = Depends(get_email_service),
) -> EmailConfig:
    try:
        return service.update_user_email_config(user_id, payload)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/send", response_model=EmailRecord, status_code=status.HTTP_201_CREATED)
async def send_email(
    user_id: str,
    payload: SendEmailRequest,
    service: EmailService = Depends(get_email_service),
) -> EmailRecord:
    try:
        return await service.send_email(user_id, payload)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/fetch", response_model=EmailPage)
async def fetch_emails(
    user_id: str,
    request: GetEmailsRequest = Depends(_page_request),
    service: EmailService = Depends(get_email_service),
) -> EmailPage:
    try:
        return await service.fetch_emails(user_id, request)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/messages", response_model=EmailPage)
def list_stored_emails(
    user_id: str,
    request: GetEmailsRequest = Depends(_page_request),
    service: EmailService = Depends(get_email_service),
) -> EmailPage:
    try:
        return service.get_emails_from_database(user_id, request)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/messages/{email_id}/read", response_model=EmailRecord)
def mark_as_read(user_id: str, email_id: str, service: EmailService = Depends(get_email_service)) -> EmailRecord:
    try:
        return service.mark_email_as_read(user_id, email_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/messages/{email_id}/delete", response_model=EmailRecord)
def mark_as_deleted(user_id: str, email_id: str, service: EmailService = Depends(get_email_service)) -> EmailRecord:
    try:
        return service.mark_email_as_deleted(user_id, email_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/messages/{email_id}/move", response_model=EmailRecord)
def move_to_folder(
    user_id: str,
    email_id: str,
    payload: MoveEmailRequest,
    service: EmailService = Depends(get_email_service),
) -> EmailRecord:
    try:
        return service.move_email_to_folder(user_id, email_id, payload.folder)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/graph/folders", response_model=list[MailFolder])
async def list_graph_folders(user_id: str, service: EmailService = Depends(get_email_service)) -> list[MailFolder]:
    try:
        return await service.get_mail_folders(user_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.get("/graph/messages/{message_id}", response_model=EmailRecord)
async def get_graph_message(
    user_id: str,
    message_id: str,
    service: EmailService = Depends(get_email_service),
) -> EmailRecord:
    try:
        return await service.get_email_details(user_id, message_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/graph/validate", status_code=status.HTTP_204_NO_CONTENT)
async def validate_graph(user_id: str, service: EmailService = Depends(get_email_service)) -> None:
    try:
        await service.validate_graph_configuration(user_id)
    except EmailServiceError as exc:
        raise _http_error(exc) from exc
