"""
Revision endpoints under /api/v1/processing-documents/{document_id}/revisions.
Listing, create-from-edit, draft updates, validation, approval and alias
resolution for a revision's counterparty.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from docledger.dependencies import (
    get_actor,
    get_context,
    get_expected_version,
    get_idempotency_key,
    verify_api_key,
)
from docledger.schemas.revisions import (
    AliasResolution,
    ApprovalInput,
    ApprovalResult,
    CreateRevisionRequest,
    ResolveAliasRequest,
    RevisionMutationResult,
    RevisionOut,
    UpdateDraftRequest,
    ValidationResult,
)
from docledger.services.aliases import AliasResolutionService
from docledger.services.authz import Actor
from docledger.services.context import ServiceContext
from docledger.services.revisions import RevisionManager

router = APIRouter(
    prefix="/api/v1/processing-documents/{document_id}/revisions",
    tags=["revisions"],
    dependencies=[Depends(verify_api_key)],
)


@router.get("", response_model=list[RevisionOut])
async def list_revisions(
    document_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """All revisions of a document, newest first."""
    return await RevisionManager(ctx).list_revisions(document_id, actor=actor)


@router.post("", response_model=RevisionMutationResult, status_code=status.HTTP_201_CREATED)
async def create_revision(
    document_id: str,
    body: CreateRevisionRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    ctx: ServiceContext = Depends(get_context),
):
    """New DRAFT from a base revision plus a patch."""
    return await RevisionManager(ctx).create_revision(
        document_id,
        actor=actor,
        expected_version=expected_version,
        idempotency_key=idempotency_key,
        based_on_revision_id=body.based_on_revision_id,
        patch=body.patch,
        reason=body.reason,
    )


@router.get("/{revision_id}", response_model=RevisionOut)
async def get_revision(
    document_id: str,
    revision_id: str,
    revalidate: bool = Query(False),
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await RevisionManager(ctx).get_revision(
        document_id, revision_id, actor=actor, revalidate=revalidate,
    )


@router.patch("/{revision_id}", response_model=RevisionMutationResult)
async def update_revision(
    document_id: str,
    revision_id: str,
    body: UpdateDraftRequest,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    ctx: ServiceContext = Depends(get_context),
):
    """Edit a DRAFT in place; APPROVED and SUPERSEDED revisions are immutable."""
    return await RevisionManager(ctx).update_draft(
        document_id,
        actor=actor,
        expected_version=expected_version,
        revision_id=revision_id,
        changes=body,
    )


@router.post("/{revision_id}/validate", response_model=ValidationResult)
async def validate_revision(
    document_id: str,
    revision_id: str,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    return await RevisionManager(ctx).validate_revision(document_id, revision_id, actor=actor)


@router.post("/{revision_id}/approve", response_model=ApprovalResult)
async def approve_revision(
    document_id: str,
    revision_id: str,
    body: Optional[ApprovalInput] = None,
    actor: Actor = Depends(get_actor),
    expected_version: Optional[int] = Depends(get_expected_version),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    ctx: ServiceContext = Depends(get_context),
):
    return await RevisionManager(ctx).approve_revision(
        document_id,
        actor=actor,
        expected_version=expected_version,
        idempotency_key=idempotency_key,
        revision_id=revision_id,
        approval=body or ApprovalInput(),
    )


@router.post("/{revision_id}/resolve-alias", response_model=AliasResolution)
async def resolve_alias(
    document_id: str,
    revision_id: str,
    body: Optional[ResolveAliasRequest] = None,
    actor: Actor = Depends(get_actor),
    ctx: ServiceContext = Depends(get_context),
):
    """Match a raw counterparty name (default: the revision's vendor) to a contact."""
    return await AliasResolutionService(ctx).resolve_for_revision(
        document_id,
        revision_id,
        actor=actor,
        raw_name=body.raw_name if body else None,
    )
