"""
Bank Line Matching Rules

Scores how well a ledger transaction explains a bank statement line.

Hard Gate:
- direction/kind compatibility (credit <-> income/transfer,
  debit <-> expense/transfer). Incompatible pairs score 0.

Weighted Factors (default weights sum to 100):
- amount (50): linear decay to zero at the amount tolerance
- date (25): linear decay to zero at the date window
- description (15): word overlap (Jaccard) of significant words
- reference (10): exact reference match, or reference found in the
  counterpart description (half bonus)

The total is rounded half-up and clamped to 0-100.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Set

from database.reconciliation_models import Direction, LedgerKind


COMPATIBLE_KINDS = {
    Direction.CREDIT: frozenset([LedgerKind.INCOME, LedgerKind.TRANSFER]),
    Direction.DEBIT: frozenset([LedgerKind.EXPENSE, LedgerKind.TRANSFER]),
}

_NON_WORD = re.compile(r"[^a-z0-9\s]")
MIN_WORD_LENGTH = 3


@dataclass(frozen=True)
class MatchingConfig:
    """
    Weights and tolerances used by the scorer.
    Build one from Settings with MatchingConfig.from_settings().
    """
    weight_amount: float = 50
    weight_date: float = 25
    weight_description: float = 15
    weight_reference: float = 10
    amount_tolerance_percent: float = 10.0
    max_date_difference_days: int = 14
    candidate_window_days: int = 14
    widened_window_days: int = 30
    min_candidates: int = 3

    @classmethod
    def from_settings(cls, settings) -> "MatchingConfig":
        return cls(
            weight_amount=settings.RECON_WEIGHT_AMOUNT,
            weight_date=settings.RECON_WEIGHT_DATE,
            weight_description=settings.RECON_WEIGHT_DESCRIPTION,
            weight_reference=settings.RECON_WEIGHT_REFERENCE,
            amount_tolerance_percent=settings.RECON_AMOUNT_TOLERANCE_PERCENT,
            max_date_difference_days=settings.RECON_MAX_DATE_DIFFERENCE_DAYS,
            candidate_window_days=settings.RECON_CANDIDATE_WINDOW_DAYS,
            widened_window_days=settings.RECON_WIDENED_WINDOW_DAYS,
            min_candidates=settings.RECON_MIN_CANDIDATES,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": {
                "amount": self.weight_amount,
                "date": self.weight_date,
                "description": self.weight_description,
                "reference": self.weight_reference,
            },
            "amount_tolerance_percent": self.amount_tolerance_percent,
            "max_date_difference_days": self.max_date_difference_days,
            "candidate_window_days": self.candidate_window_days,
            "widened_window_days": self.widened_window_days,
            "min_candidates": self.min_candidates,
        }


@dataclass
class MatchScore:
    """Score for one (bank line, ledger transaction) pair."""
    score: int
    factors: Dict[str, float] = field(default_factory=dict)
    compatible: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "compatible": self.compatible,
            "factors": self.factors,
        }


@dataclass
class MatchCandidate:
    """A ranked ledger transaction proposed for a bank line."""
    ledger_transaction_id: str
    score: int
    factors: Dict[str, float]
    ledger_transaction: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger_transaction_id": self.ledger_transaction_id,
            "score": self.score,
            "factors": self.factors,
            "ledger_transaction": self.ledger_transaction,
        }


def are_types_compatible(direction, kind) -> bool:
    """credit pairs with income/transfer, debit with expense/transfer."""
    try:
        return LedgerKind(kind) in COMPATIBLE_KINDS[Direction(direction)]
    except (ValueError, KeyError):
        return False


def significant_words(text: Optional[str]) -> Set[str]:
    """Lowercased words longer than two characters, punctuation stripped."""
    if not text:
        return set()
    cleaned = _NON_WORD.sub(" ", text.lower())
    return {w for w in cleaned.split() if len(w) >= MIN_WORD_LENGTH}


def word_overlap(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard similarity of the significant words of two strings."""
    words_a = significant_words(a)
    words_b = significant_words(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BankMatchingRules:
    """
    Scoring engine for bank line to ledger transaction matches.

    Accepts any objects exposing the model attributes (direction, amount,
    date, description, reference on the bank side; kind, amount, date,
    description, reference on the ledger side).
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def score(self, bank_line, ledger_transaction, remaining_amount: Optional[int] = None) -> MatchScore:
        """
        Score one pair.

        Args:
            remaining_amount: unmatched part of a partly reconciled bank
                line; the amount factor compares against it instead of the
                line's full amount

        Returns:
            MatchScore with the integer total and a per-factor breakdown
        """
        if not are_types_compatible(bank_line.direction, ledger_transaction.kind):
            return MatchScore(score=0, factors={"type_compatible": 0.0}, compatible=False)

        bank_amount = bank_line.amount if remaining_amount is None else remaining_amount
        factors = {
            "amount": self._score_amount(bank_amount, ledger_transaction.amount),
            "date": self._score_date(bank_line.date, ledger_transaction.date),
            "description": self._score_description(
                bank_line.description, ledger_transaction.description
            ),
            "reference": self._score_reference(bank_line, ledger_transaction),
        }

        total = round_half_up(sum(factors.values()))
        total = min(100, max(0, total))

        return MatchScore(
            score=total,
            factors={name: round(value, 2) for name, value in factors.items()},
        )

    def rank(
        self,
        bank_line,
        ledger_transactions: Iterable,
        min_score: int = 1,
        remaining_amount: Optional[int] = None,
    ) -> List[MatchCandidate]:
        """
        Score every ledger transaction and return those at or above
        min_score, best first. Ties break on ledger date then id so the
        ordering is stable for a fixed data set.
        """
        threshold = max(1, min_score)
        scored = []
        for txn in ledger_transactions:
            result = self.score(bank_line, txn, remaining_amount=remaining_amount)
            if result.score >= threshold:
                scored.append((result, txn))

        scored.sort(key=lambda pair: (-pair[0].score, pair[1].date, str(pair[1].id)))

        return [
            MatchCandidate(
                ledger_transaction_id=str(txn.id),
                score=result.score,
                factors=result.factors,
                ledger_transaction=txn.to_dict() if hasattr(txn, "to_dict") else {"id": str(txn.id)},
            )
            for result, txn in scored
        ]

    def _score_amount(self, bank_amount: int, ledger_amount: int) -> float:
        """Full weight when equal, decaying linearly to zero at the tolerance."""
        bank_amount = abs(int(bank_amount or 0))
        ledger_amount = abs(int(ledger_amount or 0))

        if bank_amount == ledger_amount:
            return float(self.config.weight_amount)

        percent_diff = abs(bank_amount - ledger_amount) / max(bank_amount, ledger_amount) * 100
        tolerance = self.config.amount_tolerance_percent
        if tolerance <= 0 or percent_diff >= tolerance:
            return 0.0

        return self.config.weight_amount * (1 - percent_diff / tolerance)

    def _score_date(self, bank_date: Optional[date], ledger_date: Optional[date]) -> float:
        """Full weight on the same day, decaying linearly to zero at the window."""
        if not bank_date or not ledger_date:
            return 0.0

        days = abs((bank_date - ledger_date).days)
        window = self.config.max_date_difference_days
        if window <= 0 or days >= window:
            return float(self.config.weight_date) if days == 0 else 0.0

        return self.config.weight_date * (1 - days / window)

    def _score_description(self, bank_description: Optional[str], ledger_description: Optional[str]) -> float:
        return self.config.weight_description * word_overlap(bank_description, ledger_description)

    def _score_reference(self, bank_line, ledger_transaction) -> float:
        """
        Both references present: exact match earns the full bonus, otherwise
        their word overlap scales it. One reference present: half the bonus
        if it appears in the other side's description.
        """
        weight = self.config.weight_reference
        bank_ref = (bank_line.reference or "").strip()
        ledger_ref = (ledger_transaction.reference or "").strip()

        if bank_ref and ledger_ref:
            if bank_ref.lower() == ledger_ref.lower():
                return float(weight)
            return weight * word_overlap(bank_ref, ledger_ref)

        if bank_ref or ledger_ref:
            ref = bank_ref or ledger_ref
            other_description = ledger_transaction.description if bank_ref else bank_line.description
            if other_description and ref.lower() in other_description.lower():
                return weight * 0.5

        return 0.0
