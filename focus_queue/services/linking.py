from __future__ import annotations

from dataclasses import dataclass

from focus_queue.services.records import (
    CompanyRegistry,
    LinkProposal,
    ReasonCode,
    RegistryCompany,
    SourceRecord,
    SourceType,
)

GENERIC_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "icloud.com",
        "aol.com",
        "protonmail.com",
        "mail.com",
        "live.com",
        "msn.com",
    }
)

EXPLICIT_LINK_CONFIDENCE = 1.0
EMAIL_DOMAIN_CONFIDENCE = 0.9
ATTENDEE_DOMAIN_CONFIDENCE = 0.85

BASE_PRIORITY_BY_SOURCE: dict[SourceType, int] = {
    SourceType.EMAIL: 5,
    SourceType.COMMITMENT: 4,
    SourceType.CALENDAR_EVENT: 3,
    SourceType.TASK: 2,
    SourceType.NOTE: 1,
    SourceType.READING: 1,
}


@dataclass(slots=True)
class DomainMatch:
    company: RegistryCompany
    domain: str


@dataclass(slots=True)
class EnrichmentResult:
    reason_codes: list[str]
    priority: int
    links: list[LinkProposal]


def get_domain_from_email(email: str | None) -> str | None:
    if not email or not isinstance(email, str):
        return None
    trimmed = email.strip().lower()
    at_index = trimmed.rfind("@")
    if at_index == -1 or at_index == len(trimmed) - 1:
        return None
    domain = normalize_domain(trimmed[at_index + 1 :])
    if not domain or "." not in domain or " " in domain:
        return None
    return domain


def normalize_domain(value: str | None) -> str:
    """Lowercase a host or website value and strip scheme, path and ``www.``."""
    if not value or not isinstance(value, str):
        return ""
    normalized = value.strip().lower()
    for prefix in ("https://", "http://"):
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix) :]
            break
    normalized = normalized.split("/", maxsplit=1)[0]
    if normalized.startswith("www."):
        normalized = normalized[4:]
    return normalized


def is_generic_domain(domain: str) -> bool:
    return domain in GENERIC_EMAIL_DOMAINS


def match_domain_to_company(email: str | None, registry: CompanyRegistry) -> DomainMatch | None:
    domain = get_domain_from_email(email)
    if not domain or is_generic_domain(domain):
        return None
    for company in registry.iter_companies():
        if company.primary_domain and normalize_domain(company.primary_domain) == domain:
            return DomainMatch(company=company, domain=domain)
    return None


def link_by_contacts(
    emails: list[str],
    registry: CompanyRegistry,
    *,
    confidence: float,
) -> LinkProposal | None:
    """Return the first registry hit across ``emails`` in order, or ``None``."""
    for email in emails:
        match = match_domain_to_company(email, registry)
        if match is not None:
            return LinkProposal(
                target_type="company",
                target_id=match.company.id,
                reason="domain_match",
                confidence=confidence,
            )
    return None


def enrich_source_record(
    source_type: SourceType,
    record: SourceRecord,
    registry: CompanyRegistry,
) -> EnrichmentResult:
    """Deterministic creation-time enrichment: links, reason codes and base priority."""
    reason_codes: list[str] = []
    links = [_explicit(link) for link in record.direct_links]

    if source_type is SourceType.EMAIL:
        if not links:
            match = link_by_contacts(record.contact_emails[:1], registry, confidence=EMAIL_DOMAIN_CONFIDENCE)
            if match is not None:
                links.append(match)
        if not links:
            reason_codes.append(ReasonCode.UNLINKED_COMPANY.value)
        reason_codes.append(ReasonCode.MISSING_SUMMARY.value)
    elif source_type is SourceType.CALENDAR_EVENT:
        if not links:
            match = link_by_contacts(record.contact_emails, registry, confidence=ATTENDEE_DOMAIN_CONFIDENCE)
            if match is not None:
                links.append(match)
        if not links:
            reason_codes.append(ReasonCode.UNLINKED_COMPANY.value)
    elif source_type is SourceType.COMMITMENT:
        if not links:
            match = link_by_contacts(record.contact_emails, registry, confidence=EMAIL_DOMAIN_CONFIDENCE)
            if match is not None:
                links.append(match)
        if not links:
            reason_codes.append(ReasonCode.UNLINKED_COMPANY.value)
    elif not links:
        # Tasks, notes and reading items only carry explicit links.
        reason_codes.append(ReasonCode.UNLINKED_COMPANY.value)

    return EnrichmentResult(
        reason_codes=reason_codes,
        priority=BASE_PRIORITY_BY_SOURCE[source_type],
        links=_dedupe_links(links),
    )


def fallback_enrichment(source_type: SourceType) -> EnrichmentResult:
    """Used when the source record could not be fetched; keeps the item in review."""
    reason_codes = [ReasonCode.UNLINKED_COMPANY.value]
    if source_type is SourceType.EMAIL:
        reason_codes.append(ReasonCode.MISSING_SUMMARY.value)
    return EnrichmentResult(
        reason_codes=reason_codes,
        priority=BASE_PRIORITY_BY_SOURCE[source_type],
        links=[],
    )


def _explicit(link: LinkProposal) -> LinkProposal:
    return LinkProposal(
        target_type=link.target_type,
        target_id=link.target_id,
        reason=link.reason or "direct_link",
        confidence=EXPLICIT_LINK_CONFIDENCE,
    )


def _dedupe_links(links: list[LinkProposal]) -> list[LinkProposal]:
    seen: set[tuple[str, str]] = set()
    deduped: list[LinkProposal] = []
    for link in links:
        key = (link.target_type, link.target_id)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(link)
    return deduped
