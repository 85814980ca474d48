"""
Alert Matcher
=============

Pure rule evaluation. Rules never consume or alter a transaction, and every
enabled rule is evaluated independently (no first-match-wins).
"""

from decimal import InvalidOperation
from typing import Iterable, List

from ..models import AlertRule, AlertType, Direction, Transaction, TransactionKind


def _meets_amount(rule: AlertRule, tx: Transaction) -> bool:
    try:
        return tx.amount >= rule.amount
    except (InvalidOperation, ValueError):
        return False


def rule_fires(rule: AlertRule, tx: Transaction) -> bool:
    """Whether `rule` fires for `tx`. Disabled rules never fire."""
    if not rule.enabled:
        return False

    if rule.type is AlertType.INCOMING_FUNDS:
        return tx.direction is Direction.IN and tx.token_symbol == rule.token and _meets_amount(rule, tx)

    if rule.type is AlertType.OUTGOING_FUNDS:
        return tx.direction is Direction.OUT and tx.token_symbol == rule.token and _meets_amount(rule, tx)

    if rule.type is AlertType.NFT_RECEIVED:
        # The feed never yields NFT transfers, so in practice this never fires
        return tx.direction is Direction.IN and tx.kind is TransactionKind.NFT

    if rule.type is AlertType.CUSTOM_AMOUNT:
        return tx.token_symbol == rule.token and _meets_amount(rule, tx)

    return False


def matching_rules(rules: Iterable[AlertRule], tx: Transaction) -> List[AlertRule]:
    """Every rule that fires for `tx`, in rule order."""
    return [rule for rule in rules if rule_fires(rule, tx)]
