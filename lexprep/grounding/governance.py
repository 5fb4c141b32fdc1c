"""
Source governance: the allowlist of authority domains and what each tier may do.

Tier A: primary law (case law, legislation). Verbatim quotes permitted.
Tier B: secondary commentary. Paraphrase only, never quoted.
Tier C: restricted commercial databases. Never used for grounding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlparse

from lexprep.core.states import AuthorityTier


@dataclass(frozen=True)
class AllowedDomain:
    domain: str
    tier: AuthorityTier
    license: str
    description: str
    jurisdiction: tuple[str, ...] = field(default_factory=tuple)

    @property
    def allow_verbatim(self) -> bool:
        return self.tier == AuthorityTier.A


@dataclass(frozen=True)
class SourcePolicy:
    max_verbatim_chars: int
    require_pinpoint: bool
    allowed_for_grounding: bool


@dataclass(frozen=True)
class SourceCheck:
    """Outcome of validate_source()."""

    valid: bool
    tier: AuthorityTier | None
    allow_verbatim: bool
    reason: str | None = None


# ========================================
# Allowlist
# ========================================

TIER_A_DOMAINS: tuple[AllowedDomain, ...] = (
    AllowedDomain("kenyalaw.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "Kenya Law Reports", ("Kenya",)),
    AllowedDomain("parliament.go.ke", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "Kenya Parliament - Bills and Acts", ("Kenya",)),
    AllowedDomain("judiciary.go.ke", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "Kenya Judiciary", ("Kenya",)),
    AllowedDomain("sheriaplex.com", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "SheriaPlex", ("Kenya",)),
    AllowedDomain("bailii.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "BAILII", ("UK", "Commonwealth")),
    AllowedDomain("legislation.gov.uk", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "UK Legislation", ("UK",)),
    AllowedDomain("saflii.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "SAFLII", ("South Africa", "Commonwealth")),
    AllowedDomain("canlii.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "CanLII", ("Canada", "Commonwealth")),
    AllowedDomain("austlii.edu.au", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "AustLII", ("Australia", "Commonwealth")),
    AllowedDomain("nzlii.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "NZLII", ("New Zealand", "Commonwealth")),
    AllowedDomain("eacj.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "East African Court of Justice", ("East Africa",)),
    AllowedDomain("african-court.org", AuthorityTier.A, "PUBLIC_LEGAL_TEXT", "African Court on Human and Peoples' Rights", ("Africa",)),
)

TIER_B_DOMAINS: tuple[AllowedDomain, ...] = (
    AllowedDomain("papers.ssrn.com", AuthorityTier.B, "CC_BY_SA", "SSRN academic papers"),
    AllowedDomain("jurist.org", AuthorityTier.B, "CC_BY_SA", "JURIST commentary"),
    AllowedDomain("law.cornell.edu", AuthorityTier.B, "PUBLIC_LEGAL_TEXT", "Cornell LII", ("USA",)),
    AllowedDomain("journals.cambridge.org", AuthorityTier.B, "RESTRICTED", "Cambridge Journals"),
    AllowedDomain("oxfordjournals.org", AuthorityTier.B, "RESTRICTED", "Oxford Journals"),
    AllowedDomain("bowmanslaw.com", AuthorityTier.B, "UNKNOWN", "Bowmans law firm briefings", ("Kenya", "Africa")),
    AllowedDomain("oraro.co.ke", AuthorityTier.B, "UNKNOWN", "Oraro & Company briefings", ("Kenya",)),
    AllowedDomain("tripleoklaw.com", AuthorityTier.B, "UNKNOWN", "TripleOKLaw briefings", ("Kenya",)),
)

TIER_C_DOMAINS: tuple[AllowedDomain, ...] = (
    AllowedDomain("westlaw.com", AuthorityTier.C, "RESTRICTED", "Westlaw"),
    AllowedDomain("lexisnexis.com", AuthorityTier.C, "RESTRICTED", "LexisNexis"),
    AllowedDomain("practicallaw.com", AuthorityTier.C, "RESTRICTED", "Practical Law"),
    AllowedDomain("kluwerlawonline.com", AuthorityTier.C, "RESTRICTED", "Kluwer Law Online"),
)

ALLOWED_DOMAINS: tuple[AllowedDomain, ...] = TIER_A_DOMAINS + TIER_B_DOMAINS + TIER_C_DOMAINS

SOURCE_POLICIES: dict[AuthorityTier, SourcePolicy] = {
    AuthorityTier.A: SourcePolicy(max_verbatim_chars=2000, require_pinpoint=True, allowed_for_grounding=True),
    AuthorityTier.B: SourcePolicy(max_verbatim_chars=0, require_pinpoint=True, allowed_for_grounding=True),
    AuthorityTier.C: SourcePolicy(max_verbatim_chars=0, require_pinpoint=True, allowed_for_grounding=False),
}


@dataclass(frozen=True)
class GroundingRules:
    fallback_message: str = "Not found in verified sources yet"
    min_evidence_per_claim: int = 1
    max_authority_age_days: int = 90
    lecture_excerpt_chars: int = 300
    lecture_excerpts_per_asset: int = 3


GROUNDING_RULES = GroundingRules()


# ========================================
# Lookups
# ========================================

def _hostname(url: str) -> str | None:
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def get_domain_info(url: str) -> AllowedDomain | None:
    """Return the allowlist entry for a URL, or None when the domain is not listed."""
    host = _hostname(url)
    if host is None:
        return None
    for entry in ALLOWED_DOMAINS:
        if host == entry.domain or host.endswith("." + entry.domain):
            return entry
    return None


def get_source_tier(url: str) -> AuthorityTier | None:
    info = get_domain_info(url)
    return info.tier if info else None


def can_quote_verbatim(tier: AuthorityTier | str | None) -> bool:
    """Only Tier A text may appear verbatim in generated content."""
    return tier is not None and AuthorityTier(tier) == AuthorityTier.A


def truncate_quote(text: str, tier: AuthorityTier | str) -> str | None:
    """Cut a quote down to the tier's verbatim allowance; None when quoting is not allowed."""
    policy = SOURCE_POLICIES[AuthorityTier(tier)]
    if not can_quote_verbatim(tier) or policy.max_verbatim_chars <= 0:
        return None
    return text[: policy.max_verbatim_chars]


def validate_source(url: str) -> SourceCheck:
    """Check a URL against the allowlist and tier policy."""
    info = get_domain_info(url)
    if info is None:
        return SourceCheck(valid=False, tier=None, allow_verbatim=False, reason="Domain not in allowlist")
    if not SOURCE_POLICIES[info.tier].allowed_for_grounding:
        return SourceCheck(
            valid=False,
            tier=info.tier,
            allow_verbatim=False,
            reason=f"Tier {info.tier.value} source {info.domain} is not allowed for grounding",
        )
    return SourceCheck(valid=True, tier=info.tier, allow_verbatim=info.allow_verbatim)


def primary_sources_for(jurisdiction: str) -> list[AllowedDomain]:
    """Tier A domains covering a jurisdiction (East Africa counts for Kenya)."""
    wanted = {jurisdiction}
    if jurisdiction == "Kenya":
        wanted.add("East Africa")
    return [d for d in TIER_A_DOMAINS if wanted.intersection(d.jurisdiction)]
