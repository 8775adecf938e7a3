"""
Relationship Repair Pass.

Idempotent post-sync fixes over the whole local store:
- Back-reference restoration for multi-valued edges (first claim wins)
- Propagation of inherited attributes across an edge
- Validation of every reference, with optional removal of broken links
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from recon_sync.connectors.local_store import LocalStore
from recon_sync.core.merge import MergeExecutor
from recon_sync.models import PropagationRule, RelationshipEdge
from recon_sync.schema import (
    ENTITY_CLASSES,
    PROPAGATION_RULES,
    EntityClass,
    all_edges,
    get_entity_class,
)
from recon_sync.utils.logger import ActivityLog

logger = logging.getLogger(__name__)


@dataclass
class BackReferenceReport:
    """Outcome of restoring scalar back-references."""

    linked: int = 0
    skipped: int = 0
    not_found: int = 0
    conflicts: int = 0
    conflict_details: list[dict[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.linked + self.skipped + self.not_found + self.conflicts

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass
class PropagationReport:
    """Attributes filled per rule, keyed "<class>.<attribute>"."""

    filled: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.filled.values())

    def to_dict(self) -> dict[str, Any]:
        return {"filled": dict(self.filled), "total": self.total}


@dataclass
class RepairReport:
    """Combined result of both repair sub-passes."""

    back_references: BackReferenceReport = field(default_factory=BackReferenceReport)
    propagation: PropagationReport = field(default_factory=PropagationReport)

    @property
    def changes(self) -> int:
        return self.back_references.linked + self.propagation.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "back_references": self.back_references.to_dict(),
            "propagation": self.propagation.to_dict(),
            "changes": self.changes,
        }


@dataclass
class RelationshipError:
    """A reference pointing at a record that does not exist locally."""

    table: str
    record_key: str
    field: str
    referenced_key: str
    referenced_table: str
    error: str
    timestamp: str = ""

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()


@dataclass
class ValidationReport:
    """Result of checking every reference in the local store."""

    total_relationships_checked: int = 0
    total_errors: int = 0
    errors_by_table: dict[str, int] = field(default_factory=dict)
    errors: list[RelationshipError] = field(default_factory=list)
    fixed_relationships: int = 0
    started_at: str = ""
    completed_at: str = ""

    def add_error(self, error: RelationshipError) -> None:
        self.errors.append(error)
        self.total_errors += 1
        self.errors_by_table[error.table] = self.errors_by_table.get(error.table, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = [asdict(e) for e in self.errors]
        return data


def _as_list(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [str(value)]


class RelationshipRepair:
    """
    Reconciles asymmetric relationship encodings in the local store.

    All writes go through the merge executor's ``patch`` so watermarks
    are never touched by a repair.

    Example:
        repair = RelationshipRepair(store)
        report = repair.run()
        print(report.back_references.linked, report.propagation.total)

        validation = repair.validate(fix_broken_links=True)
    """

    def __init__(
        self,
        store: LocalStore,
        executor: MergeExecutor | None = None,
        edges: Iterable[RelationshipEdge] | None = None,
        rules: Iterable[PropagationRule] | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self.store = store
        self.executor = executor or MergeExecutor(store)
        self.edges = list(edges) if edges is not None else all_edges()
        self.rules = list(rules) if rules is not None else list(PROPAGATION_RULES)
        self.activity = activity

    def _log(self, message: str, level: str = "INFO") -> None:
        if self.activity:
            self.activity.log(message, level)
        else:
            logger.log(logging.ERROR if level == "ERROR" else logging.INFO, message)

    def run(self) -> RepairReport:
        """Run back-reference restoration, then attribute propagation."""
        report = RepairReport(
            back_references=self.restore_back_references(),
            propagation=self.propagate_attributes(),
        )
        self._log(
            f"Repair pass: {report.back_references.linked} back-references restored, "
            f"{report.back_references.conflicts} conflicts, "
            f"{report.propagation.total} attributes propagated"
        )
        return report

    # =========================================================================
    # Back-references
    # =========================================================================

    def restore_back_references(self) -> BackReferenceReport:
        """
        Point every listed target back at its holder.

        An empty back-reference is set to the holder's key. One that
        already names the holder is left alone. One that names a
        different holder is a conflict: it is logged and never
        reassigned, so the first claim wins.
        """
        report = BackReferenceReport()

        for edge in self.edges:
            if not edge.is_multi or not edge.back_reference:
                continue
            holder_cls = ENTITY_CLASSES[edge.holder]

            for holder in self.store.iter_records(holder_cls, non_empty=edge.field):
                holder_key = holder["natural_key"]
                for target_key in _as_list(holder.get(edge.field)):
                    target_cls, target = self._find_target(edge, target_key)
                    if target is None:
                        report.not_found += 1
                        logger.warning(
                            "%s %s lists %s %s which is not stored locally",
                            edge.holder, holder_key, edge.target, target_key,
                        )
                        continue

                    current = target.get(edge.back_reference)
                    if not current:
                        self.executor.patch(
                            target_cls,
                            target_key,
                            {edge.back_reference: holder_key},
                        )
                        report.linked += 1
                    elif current == holder_key:
                        report.skipped += 1
                    else:
                        report.conflicts += 1
                        report.conflict_details.append({
                            "target_class": target_cls.name,
                            "target_key": target_key,
                            "field": edge.back_reference,
                            "claimed_by": holder_key,
                            "linked_to": str(current),
                        })
                        self._log(
                            f"Conflict: {target_cls.name} {target_key} is linked to "
                            f"{edge.holder} {current}, also claimed by {holder_key}",
                            "ERROR",
                        )

        return report

    def _find_target(
        self,
        edge: RelationshipEdge,
        key: str,
    ) -> tuple[EntityClass, dict[str, Any] | None]:
        target_cls = ENTITY_CLASSES[edge.target]
        row = self.store.get(target_cls, key)
        if row is None and edge.fallback:
            fallback_cls = ENTITY_CLASSES[edge.fallback]
            fallback_row = self.store.get(fallback_cls, key)
            if fallback_row is not None:
                return fallback_cls, fallback_row
        return target_cls, row

    # =========================================================================
    # Attribute propagation
    # =========================================================================

    def propagate_attributes(self) -> PropagationReport:
        """
        Copy inherited attributes to whichever side of an edge lacks them.

        Only empty attributes are ever written.
        """
        report = PropagationReport()

        for rule in self.rules:
            holder_cls = ENTITY_CLASSES[rule.edge_holder]
            edge = holder_cls.edge(rule.edge_field)
            target_cls = ENTITY_CLASSES[edge.target]
            holder_label = f"{holder_cls.name}.{rule.attribute}"
            target_label = f"{target_cls.name}.{rule.attribute}"

            for holder in self.store.iter_records(holder_cls, non_empty=edge.field):
                holder_key = holder["natural_key"]
                holder_value = holder.get(rule.attribute)

                for target_key in _as_list(holder.get(edge.field)):
                    target = self.store.get(target_cls, target_key)
                    if target is None:
                        continue
                    target_value = target.get(rule.attribute)

                    if not holder_value and target_value:
                        self.executor.patch(
                            holder_cls, holder_key, {rule.attribute: target_value}
                        )
                        holder_value = target_value
                        report.filled[holder_label] = report.filled.get(holder_label, 0) + 1
                    elif holder_value and not target_value:
                        self.executor.patch(
                            target_cls, target_key, {rule.attribute: holder_value}
                        )
                        report.filled[target_label] = report.filled.get(target_label, 0) + 1

        return report

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(
        self,
        tables: Iterable[str] | None = None,
        fix_broken_links: bool = False,
    ) -> ValidationReport:
        """
        Check that every reference points at a stored record.

        Args:
            tables: Entity classes to check (default: all)
            fix_broken_links: Null broken scalar references and drop broken
                entries from list references

        Returns:
            ValidationReport
        """
        report = ValidationReport(started_at=datetime.now(timezone.utc).isoformat())
        selected = (
            [get_entity_class(t) for t in tables]
            if tables
            else list(ENTITY_CLASSES.values())
        )
        key_cache: dict[str, set[str]] = {}

        def keys_of(name: str) -> set[str]:
            if name not in key_cache:
                key_cache[name] = self.store.natural_keys(name)
            return key_cache[name]

        for entity in selected:
            for edge in entity.edges:
                for row in self.store.iter_records(entity, non_empty=edge.field):
                    refs = _as_list(row.get(edge.field))
                    broken = []
                    for ref in refs:
                        report.total_relationships_checked += 1
                        if ref in keys_of(edge.target):
                            continue
                        if edge.fallback and ref in keys_of(edge.fallback):
                            continue
                        broken.append(ref)
                        report.add_error(RelationshipError(
                            table=entity.table,
                            record_key=row["natural_key"],
                            field=edge.field,
                            referenced_key=ref,
                            referenced_table=ENTITY_CLASSES[edge.target].table,
                            error="Referenced record not found",
                        ))

                    if broken and fix_broken_links:
                        if edge.is_multi:
                            value: Any = [r for r in refs if r not in broken]
                        else:
                            value = None
                        self.executor.patch(entity, row["natural_key"], {edge.field: value})
                        report.fixed_relationships += 1

        report.completed_at = datetime.now(timezone.utc).isoformat()
        level = "ERROR" if report.total_errors else "INFO"
        self._log(
            f"Relationship validation: {report.total_relationships_checked} checked, "
            f"{report.total_errors} broken, {report.fixed_relationships} fixed",
            level,
        )
        return report


def write_report(report: ValidationReport, directory: Path | str) -> tuple[Path, Path]:
    """Write a JSON and a plain-text validation report. Returns both paths."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")

    json_path = directory / f"relationship-validation-{stamp}.json"
    json_path.write_text(json.dumps(report.to_dict(), indent=2))

    lines = [
        "RELATIONSHIP VALIDATION REPORT",
        f"Started:   {report.started_at}",
        f"Completed: {report.completed_at}",
        "",
        f"Relationships checked: {report.total_relationships_checked}",
        f"Broken references:     {report.total_errors}",
        f"Fixed records:         {report.fixed_relationships}",
        "",
    ]
    if report.errors_by_table:
        lines.append("Errors by table:")
        for table, count in sorted(report.errors_by_table.items()):
            lines.append(f"  {table}: {count}")
        lines.append("")
    for error in report.errors:
        lines.append(
            f"[{error.table}] {error.record_key}.{error.field} -> "
            f"{error.referenced_table} {error.referenced_key}: {error.error}"
        )

    txt_path = directory / f"relationship-validation-{stamp}.txt"
    txt_path.write_text("\n".join(lines) + "\n")
    return json_path, txt_path
