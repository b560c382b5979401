"""
Counterparty alias resolution.

Maps a raw vendor/customer name read off a document to a canonical contact:

1. Learned aliases for the tenant and company (strategy ALIAS)
2. Corporate contacts of the tenant (strategy CONTACT)

A candidate is accepted only at or above ALIAS_AUTO_ACCEPT_THRESHOLD.
Lookups never write; aliases are learned from approvals.
"""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docledger.config import settings
from docledger.errors import ResourceNotFoundError
from docledger.models.enums import AliasLearningMode, AliasStrategy
from docledger.models.tables import Contact, CounterpartyAlias
from docledger.observability.metrics import alias_resolutions_total
from docledger.schemas.revisions import AliasResolution
from docledger.services.authz import READ, Actor
from docledger.services.context import ServiceContext
from docledger.services.events import EventBus, RevisionApproved
from docledger.services.guard import as_uuid, load_document
from docledger.services.revisions import load_revision

logger = structlog.get_logger(__name__)

LEGAL_SUFFIXES = frozenset({
    "pte", "ltd", "private", "limited", "llc", "inc", "corp", "co", "sdn", "bhd", "plc",
})

_PUNCT = re.compile(r"[^\w\s]")
_WS = re.compile(r"\s+")


def display_name(name: str) -> str:
    return _WS.sub(" ", name).strip()


def tokenize(name: Optional[str]) -> list[str]:
    """Lowercased words with punctuation and legal suffixes removed."""
    words = _PUNCT.sub(" ", (name or "").lower()).split()
    return [w for w in words if w not in LEGAL_SUFFIXES]


def normalize_name(name: Optional[str]) -> str:
    return " ".join(tokenize(name))


def jaccard(a: list[str], b: list[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 1.0
    return len(sa & sb) / len(sa | sb)


def jaro(a: str, b: str) -> float:
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    window = max(max(len(a), len(b)) // 2 - 1, 0)
    a_matched = [False] * len(a)
    b_matched = [False] * len(b)
    matches = 0
    for i, ch in enumerate(a):
        for j in range(max(0, i - window), min(len(b), i + window + 1)):
            if not b_matched[j] and b[j] == ch:
                a_matched[i] = b_matched[j] = True
                matches += 1
                break
    if matches == 0:
        return 0.0

    a_seq = [ch for ch, m in zip(a, a_matched) if m]
    b_seq = [ch for ch, m in zip(b, b_matched) if m]
    transpositions = sum(x != y for x, y in zip(a_seq, b_seq)) / 2

    return (matches / len(a) + matches / len(b) + (matches - transpositions) / matches) / 3


def jaro_winkler(a: str, b: str, prefix_scale: float = 0.1) -> float:
    score = jaro(a, b)
    prefix = 0
    for x, y in zip(a[:4], b[:4]):
        if x != y:
            break
        prefix += 1
    return score + prefix * prefix_scale * (1 - score)


def score_similarity(a: str, b: str) -> float:
    """
    1.0 for equal normalized names. Names whose word sets overlap less
    than ALIAS_TOKEN_JACCARD_THRESHOLD score 0 ("Acme" vs "Acme Holdings"),
    otherwise Jaro-Winkler of the normalized names.
    """
    norm_a, norm_b = normalize_name(a), normalize_name(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if jaccard(tokenize(a), tokenize(b)) < settings.ALIAS_TOKEN_JACCARD_THRESHOLD:
        return 0.0
    return jaro_winkler(norm_a, norm_b)


@dataclass
class Candidate:
    strategy: AliasStrategy
    contact_id: uuid.UUID
    canonical_name: str
    matched_to: str
    score: float


class AliasResolutionService:
    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(RevisionApproved, self.handle_revision_approved)

    # ── Lookup ───────────────────────────────────────────────

    async def best_candidate(
        self, session: AsyncSession, tenant_id: str, company_id: str, raw_name: str
    ) -> Optional[Candidate]:
        """Best alias match if accepted, else the best contact match (accepted or not)."""
        raw = display_name(raw_name)

        result = await session.execute(
            select(CounterpartyAlias, Contact)
            .join(Contact, Contact.id == CounterpartyAlias.contact_id)
            .where(
                CounterpartyAlias.tenant_id == tenant_id,
                CounterpartyAlias.company_id == company_id,
                CounterpartyAlias.deleted_at.is_(None),
                Contact.deleted_at.is_(None),
            )
            .order_by(CounterpartyAlias.created_at.desc())
            .limit(settings.ALIAS_SCAN_LIMIT)
        )
        best_alias = None
        for alias, contact in result.all():
            score = score_similarity(raw, alias.raw_name)
            if best_alias is None or score > best_alias.score:
                best_alias = Candidate(AliasStrategy.ALIAS, contact.id, contact.name, alias.raw_name, score)
        if best_alias is not None and best_alias.score >= settings.ALIAS_AUTO_ACCEPT_THRESHOLD:
            return best_alias

        result = await session.execute(
            select(Contact)
            .where(
                Contact.tenant_id == tenant_id,
                Contact.is_corporate.is_(True),
                Contact.deleted_at.is_(None),
            )
            .order_by(Contact.updated_at.desc())
            .limit(settings.CONTACT_SCAN_LIMIT)
        )
        best_contact = None
        for contact in result.scalars().all():
            score = score_similarity(raw, contact.name)
            if best_contact is None or score > best_contact.score:
                best_contact = Candidate(AliasStrategy.CONTACT, contact.id, contact.name, contact.name, score)
        return best_contact

    async def lookup(
        self, session: AsyncSession, tenant_id: str, company_id: str, raw_name: Optional[str]
    ) -> AliasResolution:
        raw = display_name(raw_name or "")
        if not raw:
            return AliasResolution(raw_name=raw_name, matched=False, strategy=AliasStrategy.NONE, confidence=0.0)

        candidate = await self.best_candidate(session, tenant_id, company_id, raw)
        if candidate is not None and candidate.score >= settings.ALIAS_AUTO_ACCEPT_THRESHOLD:
            resolution = AliasResolution(
                raw_name=raw,
                matched=True,
                canonical_name=candidate.canonical_name,
                contact_id=candidate.contact_id,
                strategy=candidate.strategy,
                confidence=round(candidate.score, 4),
                matched_to=candidate.matched_to,
            )
        else:
            resolution = AliasResolution(
                raw_name=raw,
                matched=False,
                strategy=AliasStrategy.NONE,
                confidence=round(candidate.score, 4) if candidate else 0.0,
            )

        alias_resolutions_total.labels(strategy=resolution.strategy.value).inc()
        logger.debug(
            "alias_resolved",
            tenant_id=tenant_id,
            company_id=company_id,
            raw_name=raw,
            strategy=resolution.strategy.value,
            confidence=resolution.confidence,
        )
        return resolution

    async def resolve(self, tenant_id: str, company_id: str, raw_name: Optional[str]) -> AliasResolution:
        async with self.ctx.unit_of_work() as uow:
            return await self.lookup(uow.session, tenant_id, company_id, raw_name)

    async def resolve_for_revision(
        self, document_id, revision_id, *, actor: Actor, raw_name: Optional[str] = None
    ) -> AliasResolution:
        """Resolve raw_name (default: the revision's vendor) in the document's scope."""
        async with self.ctx.unit_of_work() as uow:
            document = await load_document(uow.session, document_id)
            await self.ctx.authorizer.require(actor, document.tenant_id, document.company_id, READ)
            revision = await load_revision(uow.session, document, revision_id)
            name = raw_name if raw_name is not None else revision.vendor_name
            return await self.lookup(uow.session, document.tenant_id, document.company_id, name)

    # ── Learning ─────────────────────────────────────────────

    async def learn_alias(
        self,
        *,
        tenant_id: str,
        company_id: str,
        raw_name: str,
        contact_id,
        confidence: float = 1.0,
        actor_id: Optional[str] = None,
    ) -> Optional[CounterpartyAlias]:
        """Upsert (tenant, company, raw name) -> contact."""
        raw = display_name(raw_name or "")
        if not raw:
            return None
        confidence = max(0.0, min(1.0, confidence))

        async with self.ctx.unit_of_work() as uow:
            contact = await uow.session.get(Contact, as_uuid(contact_id, "contact id"))
            if contact is None or contact.tenant_id != tenant_id or contact.deleted_at is not None:
                raise ResourceNotFoundError(f"Contact {contact_id} not found")

            result = await uow.session.execute(
                select(CounterpartyAlias).where(
                    CounterpartyAlias.tenant_id == tenant_id,
                    CounterpartyAlias.company_id == company_id,
                    CounterpartyAlias.raw_name == raw,
                    CounterpartyAlias.deleted_at.is_(None),
                )
            )
            alias = result.scalars().first()
            if alias is None:
                alias = CounterpartyAlias(tenant_id=tenant_id, company_id=company_id, raw_name=raw)
                uow.session.add(alias)
            alias.contact_id = contact.id
            alias.confidence = confidence
            alias.created_by = actor_id
            await uow.session.flush()

        logger.info(
            "alias_learned",
            tenant_id=tenant_id,
            company_id=company_id,
            raw_name=raw,
            contact_id=str(contact.id),
            confidence=confidence,
        )
        return alias

    async def handle_revision_approved(self, event: RevisionApproved) -> None:
        for role, raw_name, known_id, mode in (
            ("vendor", event.vendor_name, event.vendor_id, event.vendor_learning),
            ("customer", event.customer_name, event.customer_id, event.customer_learning),
        ):
            try:
                await self._learn_from_approval(event, role, raw_name, known_id, AliasLearningMode(mode))
            except Exception:
                logger.exception(
                    "alias_learning_failed",
                    document_id=event.document_id,
                    revision_id=event.revision_id,
                    role=role,
                )

    async def _learn_from_approval(
        self,
        event: RevisionApproved,
        role: str,
        raw_name: Optional[str],
        known_id: Optional[str],
        mode: AliasLearningMode,
    ) -> None:
        """
        AUTO learns a known contact id or a confident match; FORCE also
        takes the best candidate below the threshold; SKIP never learns.
        """
        if mode == AliasLearningMode.SKIP or not (raw_name or "").strip():
            return

        contact_id, confidence = None, 1.0
        if known_id:
            try:
                contact_id = uuid.UUID(str(known_id))
            except ValueError:
                logger.warning("alias_learning_bad_contact_id", role=role, contact_id=known_id)
                return
        else:
            async with self.ctx.unit_of_work() as uow:
                candidate = await self.best_candidate(uow.session, event.tenant_id, event.company_id, raw_name)
            if candidate is None or candidate.score <= 0:
                return
            if mode == AliasLearningMode.AUTO and candidate.score < settings.ALIAS_AUTO_ACCEPT_THRESHOLD:
                return
            contact_id, confidence = candidate.contact_id, candidate.score

        await self.learn_alias(
            tenant_id=event.tenant_id,
            company_id=event.company_id,
            raw_name=raw_name,
            contact_id=contact_id,
            confidence=confidence,
            actor_id=event.actor_id,
        )
