"""
Entity class table.

Each entity class the engine knows about is declared here once: its
source type, local table, sync policy, tier, explicit field list and
outgoing relationship edges. Nothing else in the engine inspects field
names dynamically.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from recon_sync.models import (
    UNSET,
    Cardinality,
    PropagationRule,
    RelationshipEdge,
    SyncPolicy,
    Tier,
    format_timestamp,
    parse_timestamp,
)

NATURAL_KEY_FIELD = "_id"
MODIFIED_FIELD = "Modified Date"
CREATED_FIELD = "Created Date"

# Source system fields that cannot be used in a constraint query.
SYSTEM_TIMESTAMP_FIELDS = frozenset({MODIFIED_FIELD, CREATED_FIELD})

FIELD_KINDS = ("text", "number", "bool", "datetime", "list")


@dataclass(frozen=True)
class FieldSpec:
    """Maps one source field onto one local column."""

    source: str
    column: str
    kind: str = "text"

    def __post_init__(self) -> None:
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"Unknown field kind for {self.column}: {self.kind}")

    @property
    def sql_type(self) -> str:
        return {
            "text": "TEXT",
            "number": "REAL",
            "bool": "INTEGER",
            "datetime": "TEXT",
            "list": "TEXT",
        }[self.kind]

    def extract(self, raw: dict[str, Any]) -> Any:
        """Read this field from a source payload; UNSET when absent."""
        if self.source not in raw:
            return UNSET
        return self.coerce(raw[self.source])

    def coerce(self, value: Any) -> Any:
        """Normalize a source value into the column's python type."""
        if value is None:
            return None
        if self.kind == "list":
            if isinstance(value, str):
                # Uploaded exports flatten lists into comma-separated text.
                stripped = value.strip()
                if stripped.startswith("["):
                    return [str(v) for v in json.loads(stripped)]
                return [part.strip() for part in stripped.split(",") if part.strip()]
            if isinstance(value, (list, tuple)):
                return [str(v) for v in value]
            return [str(value)]
        if self.kind == "number":
            if value == "":
                return None
            if isinstance(value, bool):
                return float(value)
            return float(value)
        if self.kind == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("true", "yes", "1")
            return bool(value)
        if self.kind == "datetime":
            return format_timestamp(parse_timestamp(value))
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return str(value)

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        if self.kind == "list":
            return json.dumps(list(value))
        if self.kind == "bool":
            return 1 if value else 0
        return value

    def from_db(self, value: Any) -> Any:
        if value is None:
            return None
        if self.kind == "list":
            return json.loads(value)
        if self.kind == "bool":
            return bool(value)
        return value

    def to_source(self, value: Any) -> Any:
        """Shape a local value for a PATCH body."""
        if self.kind == "bool":
            return bool(value)
        return value


@dataclass(frozen=True)
class EntityClass:
    """Static description of one reconciled entity class."""

    name: str
    source_type: str
    table: str
    policy: SyncPolicy
    tier: Tier
    fields: tuple[FieldSpec, ...]
    edges: tuple[RelationshipEdge, ...] = ()
    push_columns: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()

    def field_for(self, column: str) -> FieldSpec:
        for spec in self.fields:
            if spec.column == column:
                return spec
        raise KeyError(f"{self.name} has no column {column}")

    @property
    def columns(self) -> list[str]:
        return [spec.column for spec in self.fields]

    @property
    def is_aggregate(self) -> bool:
        return self.tier == Tier.AGGREGATE

    @property
    def can_push(self) -> bool:
        return bool(self.push_columns)

    def edge(self, column: str) -> RelationshipEdge:
        for edge in self.edges:
            if edge.field == column:
                return edge
        raise KeyError(f"{self.name} has no edge {column}")


def _f(source: str, column: str, kind: str = "text") -> FieldSpec:
    return FieldSpec(source, column, kind)


def _common() -> tuple[FieldSpec, ...]:
    return (
        _f(CREATED_FIELD, "created_date", "datetime"),
        _f(MODIFIED_FIELD, "modified_date", "datetime"),
        _f("Created By", "created_by"),
    )


def _edge(
    holder: str,
    column: str,
    target: str,
    multi: bool = False,
    **kwargs: Any,
) -> RelationshipEdge:
    return RelationshipEdge(
        holder=holder,
        field=column,
        target=target,
        cardinality=Cardinality.MULTI if multi else Cardinality.SINGLE,
        **kwargs,
    )


AGENT = EntityClass(
    name="agent",
    source_type="agent",
    table="agents",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.INDEPENDENT,
    fields=_common() + (
        _f("Name", "name"),
        _f("Contact", "contact"),
        _f("email", "email"),
        _f("Agent Type", "agent_type"),
        _f("Address", "address"),
        _f("IC No", "ic_no"),
        _f("bankin_account", "bank_account"),
        _f("banker", "banker"),
        _f("Linked User Login", "linked_user_login"),
    ),
    push_columns=(
        "name", "contact", "agent_type", "email", "address", "bank_account", "banker",
    ),
)

INVOICE_TEMPLATE = EntityClass(
    name="invoice_template",
    source_type="invoice_template",
    table="invoice_templates",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.INDEPENDENT,
    fields=_common() + (
        _f("Template Name", "template_name"),
        _f("Company Name", "company_name"),
        _f("Company Address", "company_address"),
        _f("Company Phone", "company_phone"),
        _f("Company Email", "company_email"),
        _f("SST Registration No", "sst_registration_no"),
        _f("Bank Name", "bank_name"),
        _f("Bank Account No", "bank_account_no"),
        _f("Bank Account Name", "bank_account_name"),
        _f("Logo URL", "logo_url"),
        _f("Terms and Conditions", "terms_and_conditions"),
        _f("Disclaimer", "disclaimer"),
        _f("Apply SST", "apply_sst", "bool"),
        _f("Is Default", "is_default", "bool"),
        _f("Active", "active", "bool"),
    ),
)

CUSTOMER = EntityClass(
    name="customer",
    source_type="Customer_Profile",
    table="customers",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.DEPENDENT,
    fields=_common() + (
        _f("Name", "name"),
        _f("Contact", "phone"),
        _f("Email", "email"),
        _f("Address", "address"),
        _f("City", "city"),
        _f("State", "state"),
        _f("Postcode", "postcode"),
        _f("IC Number", "ic_number"),
        _f("Linked Agent", "linked_agent"),
    ),
    edges=(_edge("customer", "linked_agent", "agent"),),
    aliases=("customer_profile",),
)

USER = EntityClass(
    name="user",
    source_type="user",
    table="users",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.DEPENDENT,
    fields=_common() + (
        _f("authentication", "email"),
        _f("Access Level", "access_level", "list"),
        _f("Profile Picture", "profile_picture"),
        _f("Dealercode", "dealer_code"),
        _f("User Signed Up", "user_signed_up", "bool"),
        _f("Linked Agent Profile", "linked_agent_profile"),
    ),
    edges=(
        _edge("user", "linked_agent_profile", "agent", cascade_reverse=True),
    ),
    push_columns=("access_level",),
)

PAYMENT = EntityClass(
    name="payment",
    source_type="payment",
    table="payments",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.LEDGER,
    fields=_common() + (
        _f("Amount", "amount", "number"),
        _f("Payment Date", "payment_date", "datetime"),
        _f("Payment Method", "payment_method"),
        _f("Payment Method V2", "payment_method_v2"),
        _f("Remark", "remark"),
        _f("Issuer Bank", "issuer_bank"),
        _f("EPP Month", "epp_month", "number"),
        _f("Bank Charges", "bank_charges", "number"),
        _f("Terminal", "terminal"),
        _f("Verified By", "verified_by"),
        _f("attachment", "attachment", "list"),
        _f("Linked Agent", "linked_agent"),
        _f("Linked Customer", "linked_customer"),
        _f("Linked Invoice", "linked_invoice"),
    ),
    edges=(
        _edge("payment", "linked_invoice", "invoice"),
        _edge("payment", "linked_customer", "customer"),
        _edge("payment", "linked_agent", "agent"),
    ),
    push_columns=("amount", "payment_method", "remark", "payment_date"),
)

SUBMITTED_PAYMENT = EntityClass(
    name="submitted_payment",
    source_type="submit_payment",
    table="submitted_payments",
    policy=SyncPolicy.PULL_ONLY_IF_ABSENT,
    tier=Tier.LEDGER,
    fields=PAYMENT.fields + (_f("Status", "status"),),
    edges=(
        _edge("submitted_payment", "linked_invoice", "invoice"),
        _edge("submitted_payment", "linked_customer", "customer"),
        _edge("submitted_payment", "linked_agent", "agent"),
    ),
    aliases=("submit_payment",),
)

INVOICE_ITEM = EntityClass(
    name="invoice_item",
    source_type="invoice_item",
    table="invoice_items",
    policy=SyncPolicy.FORCED_CASCADE,
    tier=Tier.LEDGER,
    fields=_common() + (
        _f("Description", "description"),
        _f("Qty", "qty", "number"),
        _f("Unit Price", "unit_price", "number"),
        _f("Amount", "amount", "number"),
        _f("Sort", "sort", "number"),
        _f("Linked Invoice", "linked_invoice"),
    ),
    edges=(_edge("invoice_item", "linked_invoice", "invoice"),),
)

SEDA_REGISTRATION = EntityClass(
    name="seda_registration",
    source_type="seda_registration",
    table="seda_registrations",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.COMPLIANCE,
    fields=_common() + (
        _f("SEDA Status", "seda_status"),
        _f("Reg Status", "reg_status"),
        _f("IC No", "ic_no"),
        _f("Email", "email"),
        _f("Installation Address", "installation_address"),
        _f("System Size", "system_size", "number"),
        _f("NEM Cert", "nem_cert"),
        _f("Mykad PDF", "mykad_pdf"),
        _f("Roof Images", "roof_images", "list"),
        _f("Site Images", "site_images", "list"),
        _f("Linked Customer", "linked_customer"),
        _f("Linked Invoice", "linked_invoice", "list"),
    ),
    edges=(
        _edge(
            "seda_registration",
            "linked_invoice",
            "invoice",
            multi=True,
            back_reference="linked_seda_registration",
        ),
        _edge("seda_registration", "linked_customer", "customer"),
    ),
    aliases=("seda",),
)

INVOICE = EntityClass(
    name="invoice",
    source_type="invoice",
    table="invoices",
    policy=SyncPolicy.LATEST_WINS,
    tier=Tier.AGGREGATE,
    fields=_common() + (
        _f("Invoice ID", "invoice_id", "number"),
        _f("Invoice Number", "invoice_number"),
        _f("Invoice Date", "invoice_date", "datetime"),
        _f("Total Amount", "total_amount", "number"),
        _f("Amount", "amount", "number"),
        _f("Percent of Total Amount", "percent_of_total_amount", "number"),
        _f("Paid?", "paid", "bool"),
        _f("Status", "status"),
        _f("Approval Status", "approval_status"),
        _f("Case Status", "case_status"),
        _f("Linked Customer", "linked_customer"),
        _f("Linked Agent", "linked_agent"),
        _f("Linked Payment", "linked_payment", "list"),
        _f("Linked SEDA Registration", "linked_seda_registration"),
        _f("linked_invoice_item", "linked_invoice_item", "list"),
        _f("Linked Invoice Template", "linked_invoice_template"),
    ),
    edges=(
        _edge("invoice", "linked_customer", "customer"),
        _edge("invoice", "linked_agent", "agent"),
        _edge("invoice", "created_by", "user"),
        _edge(
            "invoice",
            "linked_payment",
            "payment",
            multi=True,
            back_reference="linked_invoice",
            fallback="submitted_payment",
        ),
        _edge("invoice", "linked_seda_registration", "seda_registration"),
        _edge(
            "invoice",
            "linked_invoice_item",
            "invoice_item",
            multi=True,
            back_reference="linked_invoice",
        ),
        _edge("invoice", "linked_invoice_template", "invoice_template"),
    ),
)

ENTITY_CLASSES: dict[str, EntityClass] = {
    entity.name: entity
    for entity in (
        AGENT,
        INVOICE_TEMPLATE,
        CUSTOMER,
        USER,
        PAYMENT,
        SUBMITTED_PAYMENT,
        INVOICE_ITEM,
        SEDA_REGISTRATION,
        INVOICE,
    )
}

PROPAGATION_RULES: tuple[PropagationRule, ...] = (
    PropagationRule(
        edge_holder="seda_registration",
        edge_field="linked_invoice",
        attribute="linked_customer",
    ),
)


def get_entity_class(name: str) -> EntityClass:
    """Look up an entity class by name, source type or alias."""
    key = name.strip().lower()
    for entity in ENTITY_CLASSES.values():
        if key in (entity.name, entity.source_type.lower(), entity.table, *entity.aliases):
            return entity
    raise KeyError(f"Unknown entity class: {name}")


def all_edges() -> list[RelationshipEdge]:
    return [edge for entity in ENTITY_CLASSES.values() for edge in entity.edges]


def reverse_cascade_edges(target: str) -> list[RelationshipEdge]:
    """Edges whose holders are pulled whenever ``target`` is force-synced."""
    return [
        edge for edge in all_edges()
        if edge.target == target and edge.cascade_reverse
    ]


def package_edges(entity: EntityClass) -> list[RelationshipEdge]:
    """Edges pointing at classes synced before ``entity``."""
    return [
        edge for edge in entity.edges
        if ENTITY_CLASSES[edge.target].tier < entity.tier
    ]


def topological_order(names: Iterable[str] | None = None) -> list[EntityClass]:
    """
    Order entity classes so parents always precede their dependents.

    Classes are grouped by tier; inside one tier the foreign-key edges
    between classes are sorted with Kahn's algorithm, alphabetically
    among classes that become ready at the same time.
    """
    selected = (
        [get_entity_class(n) for n in names]
        if names is not None
        else list(ENTITY_CLASSES.values())
    )
    by_tier: dict[Tier, list[EntityClass]] = {}
    for entity in selected:
        by_tier.setdefault(entity.tier, [])
        if entity not in by_tier[entity.tier]:
            by_tier[entity.tier].append(entity)

    ordered: list[EntityClass] = []
    for tier in sorted(by_tier):
        members = {entity.name: entity for entity in by_tier[tier]}
        remaining = {
            name: {
                edge.target
                for edge in entity.edges
                if edge.target in members and edge.target != name
            }
            for name, entity in members.items()
        }
        ready = [name for name, deps in remaining.items() if not deps]
        for name in ready:
            del remaining[name]

        while ready:
            ready.sort()
            name = ready.pop(0)
            ordered.append(members[name])
            for other in list(remaining):
                remaining[other].discard(name)
                if not remaining[other]:
                    ready.append(other)
                    del remaining[other]

        # Cycles inside a tier fall back to alphabetical order
        for name in sorted(remaining):
            ordered.append(members[name])

    return ordered


def tier_groups(names: Iterable[str] | None = None) -> list[list[EntityClass]]:
    """Topologically ordered classes grouped by tier."""
    groups: list[list[EntityClass]] = []
    for entity in topological_order(names):
        if groups and groups[-1][0].tier == entity.tier:
            groups[-1].append(entity)
        else:
            groups.append([entity])
    return groups
