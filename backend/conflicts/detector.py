"""
Conflict Detector — UPC / product identity conflicts in one ingested batch.

Conflict Types:
  - DUPLICATE_UPC: one UPC observed against 2+ distinct product IDs
  - MULTI_UPC_PRODUCT: one product ID observed against 2+ distinct UPCs

Pure computation over an in-memory batch. No database, no events, no clock:
the same records always yield the same candidates in the same order.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from conflicts.types import SEVERITY_TO_PRIORITY, ConflictType, Priority, Severity

MAX_PRODUCT_ID_LENGTH = 100
# Matches the conflicts.upc column width
MAX_UPC_LENGTH = 64
SIMILAR_UPC_PREFIX_LENGTH = 8
SIMILAR_UPC_MAX_GROUP = 10
UNKNOWN_PROVENANCE = "UNKNOWN"

_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class Record:
    """One normalized ingested row."""

    product_id: str | None
    upc: str | None
    warehouse_id: str | None = None
    location: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class ScoringPolicy:
    """Severity banding and cost estimation for a conflict group.

    A group of size 2 is always LOW; the thresholds give the group size at
    which each higher band starts.
    """

    medium_threshold: int = 3
    high_threshold: int = 5
    critical_threshold: int = 10
    unit_impact: dict[ConflictType, float] = field(
        default_factory=lambda: {
            ConflictType.DUPLICATE_UPC: 100.0,
            ConflictType.MULTI_UPC_PRODUCT: 50.0,
        }
    )
    strict_upc: bool = False

    def __post_init__(self):
        if not 2 < self.medium_threshold <= self.high_threshold <= self.critical_threshold:
            raise ValueError(
                "Severity thresholds must satisfy 2 < medium <= high <= critical, got "
                f"{self.medium_threshold}/{self.high_threshold}/{self.critical_threshold}"
            )
        if any(value < 0 for value in self.unit_impact.values()):
            raise ValueError("Unit impact constants must be non-negative")

    @classmethod
    def from_settings(cls, settings) -> "ScoringPolicy":
        return cls(
            medium_threshold=settings.severity_medium_threshold,
            high_threshold=settings.severity_high_threshold,
            critical_threshold=settings.severity_critical_threshold,
            unit_impact={
                ConflictType.DUPLICATE_UPC: settings.unit_impact_duplicate_upc,
                ConflictType.MULTI_UPC_PRODUCT: settings.unit_impact_multi_upc_product,
            },
            strict_upc=settings.strict_upc_normalization,
        )

    def classify_severity(self, group_size: int) -> Severity:
        """Classify conflict severity by the number of conflicting entities."""
        if group_size >= self.critical_threshold:
            return Severity.CRITICAL
        elif group_size >= self.high_threshold:
            return Severity.HIGH
        elif group_size >= self.medium_threshold:
            return Severity.MEDIUM
        return Severity.LOW

    def classify_priority(self, group_size: int) -> Priority:
        return SEVERITY_TO_PRIORITY[self.classify_severity(group_size)]

    def estimate_cost_impact(self, conflict_type: ConflictType, group_size: int) -> float:
        return round(group_size * self.unit_impact.get(conflict_type, 0.0), 2)


DEFAULT_POLICY = ScoringPolicy()


@dataclass(frozen=True)
class ConflictCandidate:
    """A conflict found by one detection pass, before persistence."""

    conflict_type: ConflictType
    natural_key: str
    upc: str | None
    product_id: str | None
    related_product_ids: tuple[str, ...]
    related_upcs: tuple[str, ...]
    locations: tuple[str, ...]
    warehouses: tuple[str, ...]
    severity: Severity
    priority: Priority
    cost_impact: float

    @property
    def group_size(self) -> int:
        if self.conflict_type == ConflictType.MULTI_UPC_PRODUCT:
            return len(self.related_upcs)
        return len(self.related_product_ids)

    @property
    def description(self) -> str:
        if self.conflict_type == ConflictType.DUPLICATE_UPC:
            members, subject = self.related_product_ids, f"UPC {self.upc} is assigned to"
            noun = "different products"
        else:
            members, subject = self.related_upcs, f"Product {self.product_id} has"
            noun = "different UPCs"
        preview = ", ".join(members[:3]) + ("..." if len(members) > 3 else "")
        return f"{subject} {len(members)} {noun}: {preview}"


@dataclass
class DetectionResult:
    candidates: list[ConflictCandidate]
    statistics: dict[str, Any]


# ──────────────────────────────────────────────────────────────────────────
# Identifier cleaning
# ──────────────────────────────────────────────────────────────────────────


def clean_upc(value: Any, strict: bool = False) -> str | None:
    """Return the UPC token used for grouping, or None if unusable.

    Non-strict mode treats the UPC as an opaque token: it is trimmed and
    dropped when longer than MAX_UPC_LENGTH.
    Strict mode keeps digits only, requires 8-14 of them and pads 11-digit
    codes to UPC-A length.
    """
    if value is None:
        return None
    token = str(value).strip()
    if not strict:
        if not token or len(token) > MAX_UPC_LENGTH:
            return None
        return token

    digits = _NON_DIGITS.sub("", token)
    if len(digits) < 8 or len(digits) > 14:
        return None
    if len(digits) == 11:
        return "0" + digits
    return digits


def clean_product_id(value: Any) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    if not token or len(token) > MAX_PRODUCT_ID_LENGTH:
        return None
    return token


def natural_key(conflict_type: ConflictType, identifiers: Iterable[str]) -> str:
    """Deterministic identity of a real-world conflict across detection runs."""
    return f"{conflict_type.value}:{','.join(sorted(set(identifiers)))}"


# ──────────────────────────────────────────────────────────────────────────
# Detection
# ──────────────────────────────────────────────────────────────────────────


def _to_frame(records: Iterable[Record], strict_upc: bool) -> tuple[pd.DataFrame, int, int]:
    rows = []
    total = 0
    for record in records:
        total += 1
        upc = clean_upc(record.upc, strict=strict_upc)
        product_id = clean_product_id(record.product_id)
        if not upc or not product_id:
            continue
        rows.append(
            {
                "upc": upc,
                "product_id": product_id,
                "warehouse": str(record.warehouse_id or "").strip() or UNKNOWN_PROVENANCE,
                "location": str(record.location or "").strip() or UNKNOWN_PROVENANCE,
            }
        )
    frame = pd.DataFrame(rows, columns=["upc", "product_id", "warehouse", "location"])
    return frame.drop_duplicates(ignore_index=True), total, len(rows)


def _distinct(series: pd.Series) -> tuple[str, ...]:
    return tuple(sorted(str(value) for value in series.unique()))


def _group_conflicts(
    frame: pd.DataFrame,
    *,
    anchor: str,
    member: str,
    conflict_type: ConflictType,
    policy: ScoringPolicy,
) -> list[ConflictCandidate]:
    fan_out = frame.groupby(anchor, sort=True)[member].nunique()
    conflicting = fan_out[fan_out >= 2].index
    if len(conflicting) == 0:
        return []

    candidates = []
    subset = frame[frame[anchor].isin(conflicting)]
    for anchor_value, group in subset.groupby(anchor, sort=True):
        members = _distinct(group[member])
        size = len(members)
        if conflict_type == ConflictType.DUPLICATE_UPC:
            upc, product_id = str(anchor_value), None
            related_products, related_upcs = members, (str(anchor_value),)
        else:
            upc, product_id = None, str(anchor_value)
            related_products, related_upcs = (str(anchor_value),), members

        candidates.append(
            ConflictCandidate(
                conflict_type=conflict_type,
                natural_key=natural_key(conflict_type, [str(anchor_value)]),
                upc=upc,
                product_id=product_id,
                related_product_ids=related_products,
                related_upcs=related_upcs,
                locations=_distinct(group["location"]),
                warehouses=_distinct(group["warehouse"]),
                severity=policy.classify_severity(size),
                priority=policy.classify_priority(size),
                cost_impact=policy.estimate_cost_impact(conflict_type, size),
            )
        )
    return candidates


def find_sequential_upc_products(frame: pd.DataFrame, run_length: int = 3) -> list[str]:
    """Products carrying `run_length`+ consecutive numeric UPCs (likely block-assigned)."""
    flagged = []
    for product_id, group in frame.groupby("product_id", sort=True):
        # ASCII only: str.isdigit also accepts superscripts that int() rejects
        numbers = sorted({int(u) for u in map(str, group["upc"].unique()) if u.isascii() and u.isdigit()})
        if len(numbers) < run_length:
            continue
        streak = 1
        for previous, current in zip(numbers, numbers[1:]):
            streak = streak + 1 if current == previous + 1 else 1
            if streak >= run_length:
                flagged.append(str(product_id))
                break
    return flagged


def _positional_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return sum(1 for x, y in zip(a, b) if x == y) / longest


def find_similar_upc_groups(
    frame: pd.DataFrame,
    prefix_length: int = SIMILAR_UPC_PREFIX_LENGTH,
    max_group: int = SIMILAR_UPC_MAX_GROUP,
) -> list[dict[str, Any]]:
    """Distinct UPCs sharing a leading prefix, with mean pairwise similarity.

    Groups larger than `max_group` are a normal manufacturer block and are
    not reported.
    """
    upcs = pd.Series(frame["upc"].unique(), dtype="object")
    groups = []
    for prefix, members in upcs.groupby(upcs.str[:prefix_length], sort=True):
        distinct = sorted(members)
        if not 1 < len(distinct) <= max_group:
            continue
        pairs = [
            _positional_similarity(a, b) for i, a in enumerate(distinct) for b in distinct[i + 1 :]
        ]
        groups.append(
            {
                "prefix": str(prefix),
                "upcs": distinct,
                "similarity": round(sum(pairs) / len(pairs), 4),
            }
        )
    return groups


def _sort_key(candidate: ConflictCandidate) -> tuple:
    return (-candidate.severity.rank, -candidate.group_size, candidate.natural_key)


def analyze(records: Sequence[Record], policy: ScoringPolicy | None = None) -> DetectionResult:
    """Detect conflicts and summarize the batch.

    Records with an empty or missing UPC or product ID cannot take part in a
    conflict and are skipped. Duplicate rows collapse before grouping, so a
    conflict is reported once regardless of how many rows evidence it.
    """
    policy = policy or DEFAULT_POLICY
    frame, total, usable = _to_frame(records, policy.strict_upc)

    duplicate_upcs = _group_conflicts(
        frame, anchor="upc", member="product_id", conflict_type=ConflictType.DUPLICATE_UPC, policy=policy
    )
    multi_upc_products = _group_conflicts(
        frame, anchor="product_id", member="upc", conflict_type=ConflictType.MULTI_UPC_PRODUCT, policy=policy
    )
    candidates = sorted(duplicate_upcs + multi_upc_products, key=_sort_key)

    if frame.empty:
        unique_upcs = unique_products = max_duplication = 0
    else:
        unique_upcs = int(frame["upc"].nunique())
        unique_products = int(frame["product_id"].nunique())
        max_duplication = int(
            max(
                frame.groupby("upc")["product_id"].nunique().max(),
                frame.groupby("product_id")["upc"].nunique().max(),
            )
        )

    statistics = {
        "total_records": total,
        "usable_records": usable,
        "unique_upcs": unique_upcs,
        "unique_products": unique_products,
        "duplicate_upcs": len(duplicate_upcs),
        "multi_upc_products": len(multi_upc_products),
        "max_duplication": max_duplication,
        "sequential_upc_products": [] if frame.empty else find_sequential_upc_products(frame),
        "similar_upc_groups": [] if frame.empty else find_similar_upc_groups(frame),
    }
    return DetectionResult(candidates=candidates, statistics=statistics)


def detect(records: Sequence[Record], policy: ScoringPolicy | None = None) -> list[ConflictCandidate]:
    """Return the deduplicated conflict candidates for a batch."""
    return analyze(records, policy).candidates
