"""
Duplicate Detection Rules

Scores an incoming bank transaction against the local ledger to find rows
the user already entered by hand.

Strategies (the second only runs when the first finds nothing):
- Exact: same account, same date, same amount, one description contains
  the other (case-insensitive). Confidence 98.
- Near: same account, date within ±2 days, same amount, Levenshtein
  description similarity above 0.70.
  Confidence = floor(similarity * 85 - days * 5), never below 50.

Triage of the best match:
- >= 95: auto-link to the existing row
- 70-94: keep for manual review
- < 70 / none: import as a new ledger row
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from database.sync_models import LedgerTransactionDB

logger = logging.getLogger(__name__)


# ==================== CONSTANTS ====================

EXACT_MATCH_CONFIDENCE = 98
EXACT_MATCH_LIMIT = 5

NEAR_MATCH_LIMIT = 10
NEAR_MATCH_WINDOW_DAYS = 2
NEAR_MATCH_MIN_SIMILARITY = 0.70
NEAR_MATCH_BASE_CONFIDENCE = 85
NEAR_MATCH_DAY_PENALTY = 5
NEAR_MATCH_MIN_CONFIDENCE = 50

AUTO_LINK_THRESHOLD = 95
REVIEW_THRESHOLD = 70


class MatchDecision(str, Enum):
    AUTO_LINK = "AUTO_LINK"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    IMPORT_NEW = "IMPORT_NEW"


@dataclass
class DuplicateCandidate:
    """The fields of an external transaction used for matching."""
    date: date
    amount: Decimal
    description: str


@dataclass
class DuplicateMatch:
    transaction_id: str
    confidence: int
    reason: str


# ==================== SCORING ====================

def levenshtein_distance(a: str, b: str) -> int:
    """Minimum number of single-character inserts, deletes and substitutions turning a into b."""
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """1 - distance / longer length; two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def near_match_confidence(similarity: float, days_difference: int) -> int:
    confidence = math.floor(similarity * NEAR_MATCH_BASE_CONFIDENCE - days_difference * NEAR_MATCH_DAY_PENALTY)
    return max(confidence, NEAR_MATCH_MIN_CONFIDENCE)


def descriptions_overlap(local_description: str, candidate_description: str) -> bool:
    """
    Case-insensitive containment in either direction. Empty descriptions
    never match, so a blank bank description cannot pull in every row.
    """
    local = (local_description or "").strip().lower()
    candidate = (candidate_description or "").strip().lower()
    if not local or not candidate:
        return False
    return candidate in local or local in candidate


def triage(confidence: int) -> MatchDecision:
    if confidence >= AUTO_LINK_THRESHOLD:
        return MatchDecision.AUTO_LINK
    if confidence >= REVIEW_THRESHOLD:
        return MatchDecision.NEEDS_REVIEW
    return MatchDecision.IMPORT_NEW


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


# ==================== DETECTOR ====================

class DuplicateDetector:
    """
    Finds local ledger rows an external transaction may duplicate.
    Only rows not already sourced from the bank are considered.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_duplicates(
        self,
        candidate: DuplicateCandidate,
        local_account_id: str
    ) -> List[DuplicateMatch]:
        """
        Find potential duplicates of a candidate transaction.

        Args:
            candidate: Date, amount and description of the external transaction
            local_account_id: Local account to search within

        Returns:
            Matches sorted by confidence, highest first. Empty on any error so
            the sync can continue.
        """
        try:
            matches = await self._find_exact_matches(candidate, local_account_id)

            if not matches:
                matches = await self._find_near_matches(candidate, local_account_id)

            matches.sort(key=lambda m: m.confidence, reverse=True)

            logger.debug(
                f"[DuplicateDetector] {len(matches)} matches for {candidate.date} {candidate.amount} "
                f"'{(candidate.description or '')[:30]}'",
                extra={"highest_confidence": matches[0].confidence if matches else 0}
            )
            return matches

        except Exception as e:
            logger.error(f"[DuplicateDetector] Error finding duplicates: {e}")
            return []

    async def _find_exact_matches(
        self,
        candidate: DuplicateCandidate,
        local_account_id: str
    ) -> List[DuplicateMatch]:
        result = await self.db.execute(
            select(LedgerTransactionDB)
            .where(and_(
                LedgerTransactionDB.account_id == local_account_id,
                LedgerTransactionDB.date == _as_date(candidate.date),
                LedgerTransactionDB.amount == candidate.amount,
                LedgerTransactionDB.is_from_bank.is_(False),
            ))
            .order_by(LedgerTransactionDB.created_at)
        )

        matches = []
        for tx in result.scalars().all():
            if not descriptions_overlap(tx.description, candidate.description):
                continue
            matches.append(DuplicateMatch(
                transaction_id=tx.id,
                confidence=EXACT_MATCH_CONFIDENCE,
                reason="Exact match: date, amount, and description"
            ))
            if len(matches) >= EXACT_MATCH_LIMIT:
                break

        return matches

    async def _find_near_matches(
        self,
        candidate: DuplicateCandidate,
        local_account_id: str
    ) -> List[DuplicateMatch]:
        candidate_date = _as_date(candidate.date)
        window = timedelta(days=NEAR_MATCH_WINDOW_DAYS)

        result = await self.db.execute(
            select(LedgerTransactionDB)
            .where(and_(
                LedgerTransactionDB.account_id == local_account_id,
                LedgerTransactionDB.date >= candidate_date - window,
                LedgerTransactionDB.date <= candidate_date + window,
                LedgerTransactionDB.amount == candidate.amount,
                LedgerTransactionDB.is_from_bank.is_(False),
            ))
            .order_by(LedgerTransactionDB.date)
            .limit(NEAR_MATCH_LIMIT)
        )

        candidate_description = (candidate.description or "").lower()
        matches = []

        for tx in result.scalars().all():
            similarity = string_similarity(candidate_description, (tx.description or "").lower())
            if similarity <= NEAR_MATCH_MIN_SIMILARITY:
                continue

            days_difference = abs((tx.date - candidate_date).days)
            matches.append(DuplicateMatch(
                transaction_id=tx.id,
                confidence=near_match_confidence(similarity, days_difference),
                reason=(
                    f"Near match: date ±{days_difference} days, exact amount, "
                    f"{math.floor(similarity * 100)}% description similarity"
                )
            ))

        return matches
