"""
API v1 routes.

Defines REST endpoints for the identity registration pipeline. Handlers
are plain (sync) functions: FastAPI runs them in its threadpool, so the
bounded OCR call never blocks the event loop.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status

from idverify.api.dependencies import get_basic_auth_credentials, get_registration_service
from idverify.api.models import (
    ErrorResponse,
    IdentityResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    RegistrationStatusResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)
from idverify.domain.exceptions import (
    IdentityNotFound,
    InvalidCredentials,
    InvalidOtp,
    LoginAlreadyClaimed,
    PreconditionFailed,
)
from idverify.domain.models import Credentials, DocumentImage, IdVerificationStatus
from idverify.domain.registration import RegistrationService

router = APIRouter(tags=["v1"])

_not_found = {404: {"model": ErrorResponse, "description": "Identity not found"}}


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        202: {"model": RegisterResponse, "description": "Submitted for manual verification"},
        409: {"model": ErrorResponse, "description": "Login already claimed"},
        422: {"description": "Validation error"},
    },
    summary="Start a registration",
    description="Submit credentials and an ID-document image. A draft identity is "
    "created and a one-time passcode is sent by email.",
)
def register(
    request_data: RegisterRequest,
    response: Response,
    service: RegistrationService = Depends(get_registration_service),
) -> RegisterResponse:
    credentials = Credentials(
        login=request_data.login,
        password=request_data.password,
        full_name=request_data.full_name,
        email=request_data.email,
    )
    document = DocumentImage(
        data=request_data.document.data,
        filename=request_data.document.filename,
        content_type=request_data.document.content_type,
    )

    try:
        identity = service.begin_registration(credentials, request_data.role, document)
    except LoginAlreadyClaimed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Registration failed",
        ) from None
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail=str(e),
        ) from None

    progress = service.get_registration_status(identity.id)
    if progress.id_verification_status == IdVerificationStatus.MANUAL_REVIEW:
        response.status_code = status.HTTP_202_ACCEPTED
        message = "Registration submitted for manual verification"
    else:
        message = "Verification code sent"

    return RegisterResponse(
        message=message,
        identity_id=identity.id,
        registration_step=progress.registration_step,
        id_verification_status=progress.id_verification_status,
    )


@router.post(
    "/verify-otp",
    response_model=VerifyOtpResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid or expired code"},
        422: {"description": "Validation error"},
    },
    summary="Confirm the one-time passcode",
)
def verify_otp(
    request_data: VerifyOtpRequest,
    service: RegistrationService = Depends(get_registration_service),
) -> VerifyOtpResponse:
    try:
        confirmation = service.confirm_otp(request_data.identity_id, request_data.code)
    except InvalidOtp:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OTP",
        ) from None

    return VerifyOtpResponse(
        message=confirmation.message,
        identity_id=confirmation.identity_id,
        ready_for_promotion=confirmation.ready_for_promotion,
    )


@router.post(
    "/resend-otp/{identity_id}",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        **_not_found,
        412: {"model": ErrorResponse, "description": "A code is still deliverable"},
    },
    summary="Re-issue the one-time passcode after a failed delivery",
)
def resend_otp(
    identity_id: UUID,
    service: RegistrationService = Depends(get_registration_service),
) -> MessageResponse:
    try:
        service.resend_otp(identity_id)
    except IdentityNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from None
    except PreconditionFailed as e:
        raise HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED, detail=str(e)
        ) from None
    return MessageResponse(message="Verification code sent")


@router.patch(
    "/complete-verification/{identity_id}",
    response_model=IdentityResponse,
    responses={
        **_not_found,
        409: {"model": ErrorResponse, "description": "Login already claimed"},
        412: {"model": ErrorResponse, "description": "Verification gates not satisfied"},
    },
    summary="Promote a draft identity to a verified account",
)
def complete_verification(
    identity_id: UUID,
    service: RegistrationService = Depends(get_registration_service),
) -> IdentityResponse:
    try:
        identity = service.complete_verification(identity_id)
    except IdentityNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from None
    except LoginAlreadyClaimed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Registration failed"
        ) from None
    except PreconditionFailed as e:
        raise HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED, detail=str(e)
        ) from None
    return IdentityResponse.from_identity(identity)


@router.get(
    "/registration-status/{identity_id}",
    response_model=RegistrationStatusResponse,
    responses=_not_found,
    summary="Get registration progress",
)
def registration_status(
    identity_id: UUID,
    service: RegistrationService = Depends(get_registration_service),
) -> RegistrationStatusResponse:
    try:
        progress = service.get_registration_status(identity_id)
    except IdentityNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found") from None
    return RegistrationStatusResponse.from_status(progress)


@router.post(
    "/login",
    response_model=IdentityResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
    summary="Check credentials of a verified account",
    description="Credentials (login:password) are provided via HTTP BASIC AUTH header. "
    "Draft identities cannot log in.",
)
def login(
    credentials: tuple[str, str] = Depends(get_basic_auth_credentials),
    service: RegistrationService = Depends(get_registration_service),
) -> IdentityResponse:
    login_id, password = credentials
    try:
        identity = service.authenticate(login_id, password)
    except InvalidCredentials:
        # Same response for unknown login, wrong password and unverified account
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        ) from None
    return IdentityResponse.from_identity(identity)
