"""
Distribution template maintenance.

Templates must only reference existing envelopes; a template left without any
allocation is deleted.
"""

from collections.abc import Callable, Iterable, Mapping
from decimal import Decimal

from envelope_ledger.models.ledger import DistributionTemplate


def clean_distributions(distributions: Mapping[str, Decimal]) -> dict[str, Decimal]:
    """Keep only positive allocations."""
    return {
        envelope_id: amount
        for envelope_id, amount in distributions.items()
        if amount > 0
    }


def prune_templates(
    templates: Iterable[DistributionTemplate],
    keep: Callable[[str], bool],
) -> tuple[list[DistributionTemplate], list[str]]:
    """
    Drop allocations whose envelope id fails ``keep``.

    Returns ``(changed, removed_ids)``: templates that lost some keys but still
    have allocations, and ids of templates left empty.
    """
    changed: list[DistributionTemplate] = []
    removed: list[str] = []

    for template in templates:
        remaining = {
            envelope_id: amount
            for envelope_id, amount in template.distributions.items()
            if keep(envelope_id)
        }
        if len(remaining) == len(template.distributions):
            continue
        if remaining:
            changed.append(template.model_copy(update={"distributions": remaining}))
        else:
            removed.append(template.id)

    return changed, removed


def rekey_templates(
    templates: Iterable[DistributionTemplate],
    old_envelope_id: str,
    new_envelope_id: str,
) -> list[DistributionTemplate]:
    """Move allocations from one envelope id to another, summing on collision."""
    changed = []
    for template in templates:
        if old_envelope_id not in template.distributions:
            continue
        distributions = dict(template.distributions)
        amount = distributions.pop(old_envelope_id)
        distributions[new_envelope_id] = distributions.get(new_envelope_id, Decimal("0")) + amount
        changed.append(template.model_copy(update={"distributions": distributions}))
    return changed
