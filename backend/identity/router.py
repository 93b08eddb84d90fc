"""
Identity Core - API Router

Provides REST API endpoints for member identity:
- POST /api/identity/member-ids - Generate a member id
- POST /api/identity/probe - Find the account(s) a set of claims points to
- POST /api/identity/link/begin - Park a verified provider identity
- POST /api/identity/link/complete - Bind it to an account by phone
- POST /api/identity/register - Password registration
- POST /api/identity/login/email, /login/phone - Password login
- POST /api/identity/accounts/{id}/phone/eligibility, /accounts/{id}/phone - Phone binding
- POST /api/identity/merges - Start a merge (runs in the background)
- GET /api/identity/merges/{job_id} - Poll a merge
- POST /api/identity/merges/{job_id}/cancel - Cancel a merge that has not started
- GET /api/identity/audit/invariants - Invariant audit

Permissions:
- status: public
- everything else: internal service key
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import BaseModel, Field, EmailStr, field_validator

from middleware.internal_auth import InternalService, require_internal_service
from utils.validation_errors import raise_identity_error

from .errors import IdentityError, PartialMergeFailure, PolicyViolation
from .models import IdentityClaims, ProviderAssertion
from .service import IdentityService, get_identity_service

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity Core"])


# ==================== REQUEST MODELS ====================

class MemberIdRequest(BaseModel):
    seed: Optional[str] = Field(None, max_length=200, description="Seed, usually the account id")


class ProbeRequest(BaseModel):
    """Claims to resolve. Provider and subject must come together."""
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=50)
    provider: Optional[str] = Field(None, max_length=50)
    subject: Optional[str] = Field(None, max_length=255)


class BeginLinkRequest(BaseModel):
    """A provider assertion already verified by the caller"""
    provider: str = Field(..., min_length=1, max_length=50, description="e.g. google")
    subject: str = Field(..., min_length=1, max_length=255, description="Provider user id")
    email: EmailStr = Field(..., description="Verified email from the provider")
    display_name: Optional[str] = Field(None, max_length=200)
    photo_url: Optional[str] = Field(None, max_length=2000)

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v):
        return v.strip().lower()


class CompleteLinkRequest(BaseModel):
    token: str = Field(..., min_length=1)
    phone: str = Field(..., max_length=50)
    password: str = Field(..., max_length=200)
    create_if_missing: bool = Field(False, description="Create an account when no account has this phone")
    referral_code: Optional[str] = Field(None, max_length=20)


class RegisterRequest(BaseModel):
    password: str = Field(..., max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    display_name: Optional[str] = Field(None, max_length=200)
    referral_code: Optional[str] = Field(None, max_length=20)


class EmailLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., max_length=200)


class PhoneLoginRequest(BaseModel):
    phone: str = Field(..., max_length=50)
    password: str = Field(..., max_length=200)


class PhoneRequest(BaseModel):
    phone: str = Field(..., max_length=50)


class MergeRequest(BaseModel):
    """Request model for merging accounts"""
    survivor_id: str = Field(..., min_length=1, description="ID of the account to keep")
    duplicate_id: str = Field(..., min_length=1, description="ID of the account merged away")

    @field_validator('survivor_id', 'duplicate_id')
    @classmethod
    def strip_id(cls, v):
        return v.strip()


# ==================== BACKGROUND ====================

async def run_merge_job(service: IdentityService, job_id: str):
    """Run a merge after the response is sent. Failures are left for the worker."""
    try:
        await service.run_merge(job_id)
    except PartialMergeFailure as e:
        logger.warning(f"Merge job {job_id} failed at cursor {e.cursor}, worker will retry")
    except PolicyViolation as e:
        logger.info(f"Merge job {job_id} not run: {e.message}")


# ==================== ENDPOINTS ====================

@router.get("/status")
async def get_identity_status():
    """
    Get Identity Core module status.
    No authentication required.
    """
    return {
        "status": "ok",
        "module": "identity_core",
        "version": "1.0.0",
        "features": {
            "member_ids": True,
            "probe": True,
            "provider_linking": True,
            "phone_binding": True,
            "account_merge": True,
            "invariant_audit": True
        }
    }


@router.post("/member-ids")
async def generate_member_id(
    request: MemberIdRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Generate a member id that no account holds yet.

    Hash ids are derived from the seed; sequential ids ignore it.
    """
    try:
        member_id = await service.generate_member_id(request.seed)
    except IdentityError as e:
        raise_identity_error(e)
    return {"member_id": member_id}


@router.post("/probe")
async def probe_identity(
    request: ProbeRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Resolve claims to no account, one account, or a conflict between two.
    Read-only.
    """
    claims = IdentityClaims(
        email=request.email,
        phone=request.phone,
        provider=request.provider,
        subject=request.subject,
    )
    try:
        result = await service.probe(claims)
    except IdentityError as e:
        raise_identity_error(e)
    return result.to_dict()


@router.post("/link/begin")
async def begin_link(
    request: BeginLinkRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    First phase of provider linking.

    The provider session is revoked and a short-lived token returned; the
    client must come back with a phone number and password.
    """
    assertion = ProviderAssertion(
        provider=request.provider,
        subject=request.subject,
        email=request.email,
        display_name=request.display_name,
        photo_url=request.photo_url,
    )
    try:
        ticket = await service.begin_link(assertion)
    except IdentityError as e:
        raise_identity_error(e)
    return ticket.to_dict()


@router.post("/link/complete")
async def complete_link(
    request: CompleteLinkRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Second phase of provider linking.

    **Outcomes:**
    - bound: identity attached to the account holding the phone
    - created: new account (only with create_if_missing)
    - rejected: no account has this phone, registration needed
    """
    try:
        outcome = await service.complete_link(
            request.token,
            request.phone,
            request.password,
            create_if_missing=request.create_if_missing,
            referral_code=request.referral_code,
        )
    except IdentityError as e:
        raise_identity_error(e)
    return outcome.to_dict()


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    try:
        account = await service.register(
            password=request.password,
            email=request.email,
            phone=request.phone,
            display_name=request.display_name,
            referral_code=request.referral_code,
        )
    except IdentityError as e:
        raise_identity_error(e)
    return account.to_dict()


@router.post("/login/email")
async def login_with_email(
    request: EmailLoginRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    try:
        account = await service.login_with_email(request.email, request.password)
    except IdentityError as e:
        raise_identity_error(e)
    return account.to_dict()


@router.post("/login/phone")
async def login_with_phone(
    request: PhoneLoginRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    try:
        account = await service.login_with_phone(request.phone, request.password)
    except IdentityError as e:
        raise_identity_error(e)
    return account.to_dict()


@router.post("/accounts/{account_id}/phone/eligibility")
async def check_phone_binding(
    account_id: str,
    request: PhoneRequest,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    try:
        eligibility = await service.check_phone_binding(account_id, request.phone)
    except IdentityError as e:
        raise_identity_error(e)
    return eligibility.to_dict()


@router.post("/accounts/{account_id}/phone")
async def bind_phone(
    account_id: str,
    request: PhoneRequest,
    background_tasks: BackgroundTasks,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Bind a phone number to the account.

    If a phone-only account holds the number it is merged into this one;
    the merge handle is returned and the merge runs in the background.
    """
    try:
        binding = await service.bind_phone(account_id, request.phone)
    except IdentityError as e:
        raise_identity_error(e)

    if binding.merge and binding.merge.job_id and not binding.merge.status.is_finished:
        background_tasks.add_task(run_merge_job, service, binding.merge.job_id)
    return binding.to_dict()


@router.post("/merges", status_code=status.HTTP_202_ACCEPTED)
async def start_merge(
    request: MergeRequest,
    background_tasks: BackgroundTasks,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Merge the duplicate account into the survivor.

    **Rules:**
    - The duplicate must not carry an email
    - Neither account may already be merged into a third
    - Repeating a finished merge returns status already_merged
    """
    try:
        handle = await service.start_merge(request.survivor_id, request.duplicate_id)
    except IdentityError as e:
        raise_identity_error(e)

    logger.info(f"Merge requested by {caller.name}: {request.duplicate_id} -> {request.survivor_id}")
    if handle.job_id and not handle.status.is_finished:
        background_tasks.add_task(run_merge_job, service, handle.job_id)
    return handle.to_dict()


@router.get("/merges/{job_id}")
async def get_merge(
    job_id: str,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    try:
        report = await service.get_merge(job_id)
    except IdentityError as e:
        raise_identity_error(e)
    return report.to_dict()


@router.post("/merges/{job_id}/cancel")
async def cancel_merge(
    job_id: str,
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """Cancel a merge whose first step has not committed."""
    try:
        handle = await service.cancel_merge(job_id)
    except IdentityError as e:
        raise_identity_error(e)
    return handle.to_dict()


@router.get("/audit/invariants")
async def audit_invariants(
    caller: InternalService = Depends(require_internal_service),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Check account uniqueness and tombstone invariants.
    Returns account ids only.
    """
    violations = await service.find_invariant_violations()
    return {"violations": violations, "count": len(violations)}
