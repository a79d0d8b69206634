"""Deterministic match rules: which file satisfies which service.

Two rule families:
  - contract variant: one recurring contractual report whose filename
    carries fixed tokens, independent of the service taxonomy
  - general: agency code (or name, for generic agencies) + service label

No scoring. The first filename in inventory order that satisfies the rule
wins.
"""

from collections.abc import Iterable

from automail.matching.normalize import compact
from automail.schemas.registry import ContractRule, Recipient

# Agency codes this short match too many filenames to be used alone.
MIN_AGENCY_CODE_LENGTH = 3
GENERIC_AGENCY_CODE = "geral"

# Historical filenames abbreviate the tickets service inconsistently
# ("Chamados", "chamado_mensal", "RelChamado"); only the stem is required.
TICKETS_KEYWORD = "chamado"


def is_contract_variant(recipient: Recipient, rule: ContractRule) -> bool:
    """True if the recipient is the contract-report institution."""
    name = compact(recipient.name)
    institution = compact(rule.institution_token)
    qualifier = compact(rule.qualifier_token)
    if institution and qualifier and institution in name and qualifier in name:
        return True
    code = compact(recipient.sigla)
    return bool(code) and code in {compact(c) for c in rule.agency_codes}


def agency_key(recipient: Recipient) -> str:
    """The token a filename must contain to belong to this recipient."""
    code = compact(recipient.sigla)
    if len(code) < MIN_AGENCY_CODE_LENGTH or code == GENERIC_AGENCY_CODE:
        return compact(recipient.name)
    return code


def service_key(service: str) -> str:
    key = compact(service)
    if TICKETS_KEYWORD in key:
        return TICKETS_KEYWORD
    return key


def matches(
    recipient: Recipient,
    service: str,
    candidate: str,
    *,
    rule: ContractRule,
) -> bool:
    """Decide whether ``candidate`` satisfies ``service`` for ``recipient``."""
    haystack = compact(candidate)
    if is_contract_variant(recipient, rule):
        tokens = [t for t in (compact(t) for t in rule.file_tokens) if t]
        return bool(tokens) and all(t in haystack for t in tokens)

    who = agency_key(recipient)
    what = service_key(service)
    if not who or not what:
        return False
    return who in haystack and what in haystack


def find_match(
    recipient: Recipient,
    service: str,
    file_names: Iterable[str],
    *,
    rule: ContractRule,
) -> str | None:
    """Return the first filename satisfying the rule, or None."""
    for name in file_names:
        if matches(recipient, service, name, rule=rule):
            return name
    return None
