"""
Term Incentive Engine v1.0
Sales incentive calculator for term insurance policies sold by agents

Purpose: Turn one agent's session of policy entries plus the admin-owned
incentive configuration into per-policy and aggregate payouts: gate check,
slab lookup, rule add-ons and penalties, ATS booster, and the
immediate/deferred release split.

Usage:
    engine = IncentiveEngine(DEFAULT_CONFIG)
    policies, skipped = load_policy_rows("session_policies.csv")
    result = engine.calculate(SessionInput("Inhouse", "Tier 1", policies))
    result.export("incentive_jan26.csv")
    result.print_summary()
"""

import math
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import pandas as pd

from rule_conditions import check_condition, compile_condition, evaluate

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("IncentiveEngine")

# =============================================================================
# 1. CONFIGURATION: TABLE TYPES
# =============================================================================

@dataclass(frozen=True)
class TierEntry:
    nop: int              # minimum number of policies for this slab
    incentive: float      # slab amount for the whole session


@dataclass(frozen=True)
class TierTable:
    organization: str     # "Inhouse", "Outsource"
    vintage: str          # "0-3 Months", "Tier 1", "Tier 2"
    tiers: Tuple[TierEntry, ...]
    table_id: str = ""


RULE_KINDS = ("payout", "penalty")


@dataclass(frozen=True)
class CalculationRule:
    condition: str
    adjustment: float
    kind: str = "payout"  # payout | penalty
    name: str = ""
    rule_id: str = ""


@dataclass(frozen=True)
class AtsBand:
    min_ats: float
    multiplier: float     # 0.10 = 10% boost on generated value


@dataclass(frozen=True)
class CriterionColumn:
    column_id: str
    name: str
    column_type: str      # dropdown, checkbox, number, text, calculated
    dropdown_options: Tuple[str, ...] = ()
    default: Any = None
    formula: Optional[str] = None
    order: int = 0


@dataclass(frozen=True)
class ProductType:
    product_id: str
    name: str
    enabled: bool = True


# =============================================================================
# 2. DEFAULT TABLES (Jan'26 term grid)
# =============================================================================

PRODUCT_OPTIONS = ("Etouch", "I-Secure", "I-Secure sachet", "Other term")

DEFAULT_COLUMNS: Tuple[CriterionColumn, ...] = (
    CriterionColumn("policyName", "Product Name", "dropdown", PRODUCT_OPTIONS, order=1),
    CriterionColumn("paymentType", "Payment Type", "dropdown", (
        "Single Pay",
        "Limited Pay - 5 years",
        "Limited Pay - 6 years",
        "Limited Pay - 10 years",
        "Limited Pay - 12 years",
        "Limited Pay - 15 years",
        "Regular",
    ), order=2),
    CriterionColumn("paymentAmount", "Payment Amount", "number", order=3),
    CriterionColumn("paymentFrequency", "Payment Frequency", "dropdown",
                    ("Monthly", "Half-Yearly", "Annual"), order=4),
    CriterionColumn("ape", "APE", "calculated", formula="calculateAPE", order=5),
    CriterionColumn("ciAbove25L", "CI >25 lakhs", "checkbox", order=6),
    CriterionColumn("adb", "ADB (Y/N)", "checkbox", order=7),
    CriterionColumn("autopay", "Autopay (Y/N)", "checkbox", order=8),
    CriterionColumn("bfl", "BFL (Y/N)", "checkbox", order=9),
    CriterionColumn("superwoman", "Super Woman Term (Y/N)", "checkbox", order=10),
    CriterionColumn("spouse", "Spouse (Y/N)", "checkbox", order=11),
    CriterionColumn("ekyc", "EKYC (Y/N)", "checkbox", order=12),
    CriterionColumn("accountAggregator", "Acc Aggregator", "checkbox", order=13),
)


def _tiers(*pairs: Tuple[int, float]) -> Tuple[TierEntry, ...]:
    return tuple(TierEntry(nop, incentive) for nop, incentive in pairs)


DEFAULT_TIER_TABLES: Tuple[TierTable, ...] = (
    TierTable("Outsource", "0-3 Months", _tiers(
        (3, 3000), (4, 4000), (5, 5200), (6, 6400), (7, 7600), (8, 9000), (9, 10500),
        (10, 12200), (11, 14000), (12, 16000), (13, 18200), (14, 20600), (15, 23000),
    ), table_id="hro-table"),
    TierTable("Inhouse", "Tier 1", _tiers(
        (4, 4000), (5, 5000), (6, 6200), (7, 7400), (8, 8600), (9, 10000), (10, 11500),
        (11, 13200), (12, 15000), (13, 17000), (14, 19200), (15, 21600), (16, 24000),
    ), table_id="tier1-table"),
    TierTable("Inhouse", "Tier 2", _tiers(
        (5, 5000), (6, 6000), (7, 7200), (8, 8400), (9, 9600), (10, 11000), (11, 12500),
        (12, 14200), (13, 16000), (14, 18000), (15, 20200), (16, 22600), (17, 25000),
    ), table_id="tier2-table"),
)

DEFAULT_RULES: Tuple[CalculationRule, ...] = (
    # Annual payments
    CalculationRule('policyName === "Etouch" && paymentFrequency === "Annual"', 1000,
                    "payout", "Annual Payments on Etouch", "rule-etouch-annual"),
    CalculationRule('policyName === "I-Secure" && paymentFrequency === "Annual"', 1500,
                    "payout", "Annual Payments on I-Secure", "rule-isecure-annual"),
    CalculationRule("ekyc === true", 2000, "payout", "EKYC 100% Cases", "rule-ekyc"),
    # Monthly without autopay
    CalculationRule('policyName === "Etouch" && paymentFrequency === "Monthly" && autopay === false',
                    -1400, "penalty", "Monthly E-touch No Autopay", "rule-penalty-etouch-no-autopay"),
    CalculationRule('policyName === "I-Secure" && paymentFrequency === "Monthly" && autopay === false',
                    -2000, "penalty", "Monthly I-Secure No Autopay", "rule-penalty-isecure-no-autopay"),
    # Lead source
    CalculationRule("spouse === true", 500, "payout", "Spouse Case", "rule-spouse"),
    CalculationRule("bfl === true", 500, "payout", "BFL Source", "rule-bfl"),
    CalculationRule("superwoman === true", 1000, "payout", "Super Woman Term", "rule-superwoman"),
    CalculationRule('policyName === "I-Secure sachet"', 1000,
                    "payout", "Sachet Term on Assisted Journey", "rule-sachet-assisted"),
    CalculationRule('accountAggregator === true && (policyName === "Etouch" || policyName === "I-Secure")',
                    500, "payout", "Isecure & Etouch via Account Aggregator", "rule-aa"),
    # Limited pay
    CalculationRule('paymentType === "Limited Pay - 5 years" || paymentType === "Limited Pay - 6 years"',
                    3000, "payout", "Limited Pay 5 & 6 years", "rule-limited-pay-5-6"),
    CalculationRule('paymentType === "Limited Pay - 10 years"', 2000,
                    "payout", "Limited Pay 10 years", "rule-limited-pay-10"),
    CalculationRule('paymentType === "Limited Pay - 12 years"', 1250,
                    "payout", "Limited Pay 12 years", "rule-limited-pay-12"),
    CalculationRule('paymentType === "Limited Pay - 15 years"', 1000,
                    "payout", "Limited Pay 15 years", "rule-limited-pay-15"),
    # Riders
    CalculationRule("ciAbove25L === true", 1000, "payout", "CI Rider Sum Assured > 25 Lacs", "rule-ci-rider"),
    CalculationRule("adb === true", 500, "payout", "ADB Rider Sum Assured > 1 Cr", "rule-adb-rider"),
)

# Multipliers on generated value: 0.10 pays 110%
DEFAULT_ATS_TABLE: Tuple[AtsBand, ...] = (
    AtsBand(20001, 0.10),
    AtsBand(25000, 0.25),
    AtsBand(40000, 0.40),
)

# NOTE: "I-Secure Non Sachet" is not among PRODUCT_OPTIONS; validate() reports it.
# Earlier grids deferred only "I-Secure sachet". Confirm with the incentive desk.
DEFAULT_DEFERRED_PRODUCTS = ("I-Secure Non Sachet", "I-Secure sachet")
DEFAULT_DEFERRED_FREQUENCIES = ("Monthly",)

ABOVE_CAP_BONUS = 2000.0   # per policy beyond the top slab


# =============================================================================
# 3. INCENTIVE CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class IncentiveConfig:
    month: str = "Jan'26"
    tier_tables: Tuple[TierTable, ...] = DEFAULT_TIER_TABLES
    calculation_rules: Tuple[CalculationRule, ...] = DEFAULT_RULES
    ats_table: Optional[Tuple[AtsBand, ...]] = DEFAULT_ATS_TABLE
    criterion_columns: Tuple[CriterionColumn, ...] = DEFAULT_COLUMNS
    organizations: Tuple[str, ...] = ("Inhouse", "Outsource")
    vintages: Tuple[str, ...] = ("0-3 Months", "More than 3 Months", "Tier 1", "Tier 2")
    product_types: Tuple[ProductType, ...] = (ProductType("term", "Term"),)
    deferred_products: Tuple[str, ...] = DEFAULT_DEFERRED_PRODUCTS
    deferred_frequencies: Tuple[str, ...] = DEFAULT_DEFERRED_FREQUENCIES
    above_cap_bonus: float = ABOVE_CAP_BONUS

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IncentiveConfig":
        """
        Build a configuration from the admin store's JSON document.
        Keys follow the store's camelCase names (tierTables, calculationRules,
        atsTable, criterionColumns, ...); missing keys keep the defaults.
        """
        base = cls()
        values: Dict[str, Any] = {}

        if "month" in data:
            values["month"] = str(data["month"])
        if "tierTables" in data:
            values["tier_tables"] = tuple(
                TierTable(
                    organization=str(t.get("organization", "")),
                    vintage=str(t.get("vintage", "")),
                    tiers=tuple(
                        TierEntry(int(to_number(x.get("nop"))), to_number(x.get("incentive")))
                        for x in t.get("tiers") or ()
                    ),
                    table_id=str(t.get("id", "")),
                )
                for t in data["tierTables"] or ()
            )
        if "calculationRules" in data:
            values["calculation_rules"] = tuple(
                CalculationRule(
                    condition=str(r.get("condition", "")),
                    adjustment=to_number(r.get("adjustment")),
                    kind=str(r.get("type", "payout")),
                    name=str(r.get("name", "")),
                    rule_id=str(r.get("id", "")),
                )
                for r in data["calculationRules"] or ()
            )
        if "atsTable" in data:
            bands = data["atsTable"]
            values["ats_table"] = None if bands is None else tuple(
                AtsBand(to_number(b.get("minAts")), to_number(b.get("incentive"))) for b in bands
            )
        if "criterionColumns" in data:
            values["criterion_columns"] = tuple(
                CriterionColumn(
                    column_id=str(c.get("id", "")),
                    name=str(c.get("name", "")),
                    column_type=str(c.get("type", "text")),
                    dropdown_options=tuple(c.get("dropdownOptions") or ()),
                    default=c.get("defaultValue"),
                    formula=c.get("formula"),
                    order=int(to_number(c.get("order"))),
                )
                for c in data["criterionColumns"] or ()
            )
        if "productTypes" in data:
            values["product_types"] = tuple(
                ProductType(str(p.get("id", "")), str(p.get("name", "")), bool(p.get("enabled", True)))
                for p in data["productTypes"] or ()
            )
        for key, attr in (("organizations", "organizations"), ("vintages", "vintages"),
                          ("deferredProducts", "deferred_products"),
                          ("deferredFrequencies", "deferred_frequencies")):
            if key in data:
                values[attr] = tuple(str(v) for v in data[key] or ())
        if "aboveCapBonus" in data:
            values["above_cap_bonus"] = to_number(data["aboveCapBonus"])

        return replace(base, **values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "tierTables": [
                {
                    "id": t.table_id,
                    "organization": t.organization,
                    "vintage": t.vintage,
                    "tiers": [{"nop": x.nop, "incentive": x.incentive} for x in t.tiers],
                }
                for t in self.tier_tables
            ],
            "calculationRules": [
                {"id": r.rule_id, "name": r.name, "condition": r.condition,
                 "adjustment": r.adjustment, "type": r.kind}
                for r in self.calculation_rules
            ],
            "atsTable": None if self.ats_table is None else [
                {"minAts": b.min_ats, "incentive": b.multiplier} for b in self.ats_table
            ],
            "criterionColumns": [
                {"id": c.column_id, "name": c.name, "type": c.column_type,
                 "dropdownOptions": list(c.dropdown_options), "defaultValue": c.default,
                 "formula": c.formula, "order": c.order}
                for c in self.criterion_columns
            ],
            "productTypes": [
                {"id": p.product_id, "name": p.name, "enabled": p.enabled} for p in self.product_types
            ],
            "organizations": list(self.organizations),
            "vintages": list(self.vintages),
            "deferredProducts": list(self.deferred_products),
            "deferredFrequencies": list(self.deferred_frequencies),
            "aboveCapBonus": self.above_cap_bonus,
        }

    def validate(self) -> List[str]:
        """
        Check the configuration before it is saved. Returns a list of problems;
        an empty list means the configuration is clean. Never raises.
        """
        problems: List[str] = []

        for table in self.tier_tables:
            nops = [t.nop for t in table.tiers]
            repeated = sorted({n for n in nops if nops.count(n) > 1})
            if repeated:
                problems.append(
                    f"Tier table {table.organization}/{table.vintage} repeats thresholds {repeated}"
                )

        known_fields = set(FIELD_ATTRS) | {c.column_id for c in self.criterion_columns} | {"ape"}
        for rule in self.calculation_rules:
            label = rule.name or rule.rule_id or rule.condition
            if rule.kind not in RULE_KINDS:
                problems.append(f"Rule '{label}' has unknown type '{rule.kind}'")
            error = check_condition(rule.condition)
            if error:
                problems.append(f"Rule '{label}' condition does not parse: {error}")
                continue
            unknown = [n for n in compile_condition(rule.condition).field_names() if n not in known_fields]
            if unknown:
                problems.append(f"Rule '{label}' references unknown fields {unknown}")

        product_column = next((c for c in self.criterion_columns if c.column_id == "policyName"), None)
        if product_column and product_column.dropdown_options:
            missing = [p for p in self.deferred_products if p not in product_column.dropdown_options]
            if missing:
                problems.append(
                    f"Deferred products {missing} are not options of '{product_column.name}'"
                )

        return problems


DEFAULT_CONFIG = IncentiveConfig()


# =============================================================================
# 4. POLICY ROWS & SESSION INPUT
# =============================================================================

TRUTHY_STRINGS = ("TRUE", "1", "YES", "Y")

FREQUENCY_MULTIPLIERS: Dict[str, int] = {
    "Monthly": 12,
    "Quarterly": 4,
    "Half-Yearly": 2,
    "Annual": 1,
}

# Row key -> PolicyRow attribute
FIELD_ATTRS: Dict[str, str] = {
    "id": "policy_id",
    "policyName": "policy_name",
    "paymentType": "payment_type",
    "paymentAmount": "payment_amount",
    "paymentFrequency": "payment_frequency",
    "ciAbove25L": "ci_above_25l",
    "adb": "adb",
}

# Written by a calculation; dropped when a calculated row is submitted again
DERIVED_FIELDS = ("ape", "additionalPayout", "totalPenalty", "boosterAmount",
                  "totalIncentive", "isDeferred")


def _plain(value: Any) -> Any:
    """Unwrap numpy scalars and turn NaN into None."""
    if value is not None and not isinstance(value, (str, bytes)) and hasattr(value, "item"):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def to_number(value: Any) -> float:
    """Coerce a cell to a finite float; blanks, NaN and junk become 0."""
    value = _plain(value)
    if value is None:
        return 0.0
    try:
        number = float(value.replace(",", "").strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def to_bool(value: Any) -> bool:
    value = _plain(value)
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().upper() in TRUTHY_STRINGS


def to_text(value: Any) -> str:
    value = _plain(value)
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def normalize_frequency(value: Any) -> str:
    text = to_text(value)
    canonical = text.title()
    return canonical if canonical in FREQUENCY_MULTIPLIERS else text


def _coerce_column(value: Any, column_type: Optional[str]) -> Any:
    if column_type == "checkbox":
        return to_bool(value)
    if column_type == "number":
        return to_number(value)
    if column_type in ("dropdown", "text"):
        return to_text(value)
    return _plain(value)


def column_default(col: CriterionColumn) -> Any:
    """Value an entry-sheet cell starts with."""
    if col.default is not None:
        return col.default
    if col.column_type == "checkbox":
        return False
    if col.column_type == "number":
        return 0
    if col.column_type == "dropdown" and col.dropdown_options:
        return col.dropdown_options[0]
    return ""


@dataclass(frozen=True)
class PolicyRow:
    policy_id: str
    policy_name: str = ""
    payment_type: str = ""
    payment_amount: float = 0.0
    payment_frequency: str = ""
    ci_above_25l: bool = False
    adb: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)   # UI-only columns

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        columns: Sequence[CriterionColumn] = DEFAULT_COLUMNS,
    ) -> "PolicyRow":
        """
        Build a row from a data-entry mapping keyed by column ids.
        Known fields are coerced to their types; other columns are coerced by
        their configured column type and kept in `extra`. Configured columns
        missing from `data` start at their entry-sheet default.
        """
        data = dict(data)
        for col in columns:
            if col.column_type != "calculated" and col.column_id not in data:
                data[col.column_id] = column_default(col)

        column_types = {c.column_id: c.column_type for c in columns}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            if key in FIELD_ATTRS or key in DERIVED_FIELDS:
                continue
            extra[key] = _coerce_column(value, column_types.get(key))

        return cls(
            policy_id=to_text(data.get("id")),
            policy_name=to_text(data.get("policyName")),
            payment_type=to_text(data.get("paymentType")),
            payment_amount=to_number(data.get("paymentAmount")),
            payment_frequency=normalize_frequency(data.get("paymentFrequency")),
            ci_above_25l=to_bool(data.get("ciAbove25L")),
            adb=to_bool(data.get("adb")),
            extra=extra,
        )

    def fields(self) -> Dict[str, Any]:
        """Field mapping seen by rule conditions."""
        values = dict(self.extra)
        for key, attr in FIELD_ATTRS.items():
            values[key] = getattr(self, attr)
        return values


@dataclass(frozen=True)
class SessionInput:
    organization: str
    vintage: str
    policies: Tuple[PolicyRow, ...] = ()
    month: str = ""
    employee_name: str = ""
    employee_id: str = ""
    product_type: str = "term"

    def __post_init__(self):
        object.__setattr__(self, "policies", tuple(self.policies))


def blank_policy_row(config: IncentiveConfig, policy_id: str) -> PolicyRow:
    """Empty row the way the data-entry sheet creates one."""
    return PolicyRow.from_mapping({"id": policy_id}, config.criterion_columns)


# =============================================================================
# 5. METRIC CALCULATORS
# =============================================================================

def annual_premium_equivalent(policy: PolicyRow) -> float:
    """Payment amount annualized by frequency; unknown frequency counts as annual."""
    multiplier = FREQUENCY_MULTIPLIERS.get(policy.payment_frequency, 1)
    return to_number(policy.payment_amount) * multiplier


def is_strictly_eligible(policy: PolicyRow) -> bool:
    """
    CI rider above 25 lakhs AND ADB rider above 1 crore.
    Gates positive rule payouts only; never slab entry or policy count.
    """
    return policy.ci_above_25l is True and policy.adb is True


# =============================================================================
# 6. TIER & BOOSTER RESOLVERS
# =============================================================================

VINTAGE_ALIASES: Dict[str, str] = {
    "More than 3 Months": "Tier 1",
}

GATE_MINIMUMS: Dict[str, int] = {
    "0-3 Months": 3,
    "Tier 1": 4,
    "Tier 2": 5,
}
DEFAULT_GATE_MINIMUM = 4


def normalize_vintage(vintage: str) -> str:
    label = to_text(vintage)
    return VINTAGE_ALIASES.get(label, label)


def min_gate_for(vintage: str) -> int:
    return GATE_MINIMUMS.get(normalize_vintage(vintage), DEFAULT_GATE_MINIMUM)


def find_tier_table(
    tier_tables: Sequence[TierTable],
    organization: str,
    vintage: str,
) -> Optional[TierTable]:
    """
    Table for (organization, vintage). When the organization has no table for
    the vintage, the first table with that vintage is used; callers can tell
    by comparing the returned table's organization.
    """
    key = normalize_vintage(vintage)
    candidates = [t for t in tier_tables if normalize_vintage(t.vintage) == key]
    for table in candidates:
        if table.organization == organization:
            return table
    return candidates[0] if candidates else None


def resolve_slab(
    tier_tables: Sequence[TierTable],
    organization: str,
    vintage: str,
    count: int,
    above_cap_bonus: float = ABOVE_CAP_BONUS,
) -> float:
    table = find_tier_table(tier_tables, organization, vintage)
    if table is None or not table.tiers:
        return 0.0

    ordered = sorted(table.tiers, key=lambda t: t.nop, reverse=True)
    match = next((t for t in ordered if count >= t.nop), None)
    if match is None:
        return 0.0

    amount = to_number(match.incentive)
    top = ordered[0].nop
    if count > top:
        amount += (count - top) * above_cap_bonus
    return amount


def average_ticket_size(policies: Sequence[PolicyRow]) -> float:
    if not policies:
        return 0.0
    return sum(annual_premium_equivalent(p) for p in policies) / len(policies)


def resolve_booster_multiplier(ats_table: Optional[Sequence[AtsBand]], ats: float) -> float:
    if not ats_table:
        return 0.0
    ordered = sorted(ats_table, key=lambda b: b.min_ats, reverse=True)
    match = next((b for b in ordered if ats >= b.min_ats), None)
    return to_number(match.multiplier) if match else 0.0


# =============================================================================
# 7. RULE APPLIER
# =============================================================================

class RuleTotals(NamedTuple):
    payouts: float
    penalties: float


def apply_rules(
    policy: PolicyRow,
    rules: Sequence[CalculationRule],
    is_eligible: bool,
    fields: Optional[Mapping[str, Any]] = None,
) -> RuleTotals:
    """
    Sum every matching rule. Penalties always apply; payouts apply only to
    eligible policies.
    """
    values = policy.fields() if fields is None else fields
    payouts = 0.0
    penalties = 0.0
    for rule in rules:
        if not evaluate(rule.condition, values):
            continue
        if rule.kind == "penalty":
            penalties += abs(to_number(rule.adjustment))
        elif is_eligible:
            payouts += to_number(rule.adjustment)
    return RuleTotals(payouts, penalties)


# =============================================================================
# 8. RESULTS
# =============================================================================

@dataclass(frozen=True)
class PolicyOutcome:
    policy: PolicyRow
    ape: float
    additional_payout: float = 0.0
    total_penalty: float = 0.0
    booster_amount: float = 0.0
    total_incentive: float = 0.0
    is_deferred: bool = False

    def to_dict(self) -> Dict[str, Any]:
        row = self.policy.fields()
        row.update({
            "ape": self.ape,
            "additionalPayout": self.additional_payout,
            "totalPenalty": self.total_penalty,
            "boosterAmount": self.booster_amount,
            "totalIncentive": self.total_incentive,
            "isDeferred": self.is_deferred,
        })
        return row


@dataclass(frozen=True)
class SubsetResult:
    policies: Tuple[PolicyOutcome, ...]
    gate_passed: bool = False
    total_generated: float = 0.0
    base_from_slab: float = 0.0
    total_payouts: float = 0.0
    total_penalties: float = 0.0
    total_boost_amount: float = 0.0
    average_ticket_size: float = 0.0
    ats_multiplier: float = 0.0


@dataclass(frozen=True)
class Breakdown:
    total_base: float = 0.0
    total_payouts: float = 0.0
    total_penalties: float = 0.0
    total_rate: float = 0.0       # potential value per policy


FRAME_COLUMNS = [
    "policy_id", "policy_name", "payment_frequency", "ape",
    "additional_payout", "total_penalty", "booster_amount",
    "total_incentive", "is_deferred",
]
AMOUNT_COLUMNS = ["ape", "additional_payout", "total_penalty", "booster_amount", "total_incentive"]


@dataclass(frozen=True)
class CalculationResult:
    session: SessionInput
    policies: Tuple[PolicyOutcome, ...]
    total_incentive: float           # released now
    deferred_incentive: float        # released later
    average_ticket_size: float
    ats_incentive: float
    breakdown: Breakdown
    potential_total: float
    fallback_applied: bool = False
    warnings: Tuple[str, ...] = ()

    @property
    def grand_total(self) -> float:
        return self.total_incentive + self.deferred_incentive

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "policy_id": o.policy.policy_id,
                "policy_name": o.policy.policy_name,
                "payment_frequency": o.policy.payment_frequency,
                "ape": o.ape,
                "additional_payout": o.additional_payout,
                "total_penalty": o.total_penalty,
                "booster_amount": o.booster_amount,
                "total_incentive": o.total_incentive,
                "is_deferred": o.is_deferred,
            }
            for o in self.policies
        ]
        return pd.DataFrame(rows, columns=FRAME_COLUMNS)

    def export(self, output_path: str) -> str:
        """Export per-policy detail to CSV, amounts rounded to paise."""
        frame = self.to_frame()
        frame[AMOUNT_COLUMNS] = frame[AMOUNT_COLUMNS].astype(float).round(2)
        frame.to_csv(output_path, index=False)
        logger.info(f"Incentive detail exported to {output_path}")
        return output_path

    def print_summary(self) -> None:
        s = self.session
        print("\n" + "=" * 80)
        title = f"  TERM INCENTIVE: {s.employee_name or s.employee_id or 'Session'}"
        if s.month:
            title += f" ({s.month})"
        print(title)
        print("=" * 80)
        print(f"  Organization:    {s.organization} / {s.vintage}")
        print(f"  Policies:        {len(self.policies)} ({sum(o.is_deferred for o in self.policies)} deferred)")
        print(f"  Avg Ticket Size: ₹{self.average_ticket_size:,.2f}")
        print(f"  Base From Slab:  ₹{self.breakdown.total_base:,.2f}")
        print(f"  Add-ons:         ₹{self.breakdown.total_payouts:,.2f}")
        print(f"  Penalties:       ₹{self.breakdown.total_penalties:,.2f}")
        print(f"  ATS Booster:     ₹{self.ats_incentive:,.2f}")
        print(f"  RELEASED NOW:    ₹{self.total_incentive:,.2f}")
        print(f"  DEFERRED:        ₹{self.deferred_incentive:,.2f}")
        if self.fallback_applied:
            print("  (immediate policies paid their share of the full session)")
        print("=" * 80)
        print()
        if self.policies:
            print(self.to_frame().round(2).to_string(index=False))

        if self.warnings:
            print(f"\n  {len(self.warnings)} warnings:")
            for w in self.warnings[:10]:
                print(f"   {w}")
            if len(self.warnings) > 10:
                print(f"   ... and {len(self.warnings) - 10} more")


# =============================================================================
# 9. THE ENGINE
# =============================================================================

class IncentiveEngine:
    def __init__(self, config: Optional[IncentiveConfig] = None):
        self.config = config or DEFAULT_CONFIG

    # -----------------------------------------------------------------
    # DEFERRAL
    # -----------------------------------------------------------------
    def is_deferred(self, policy: PolicyRow) -> bool:
        """Value of these policies is released later, not with this pay run."""
        return (
            policy.policy_name in self.config.deferred_products
            and policy.payment_frequency in self.config.deferred_frequencies
        )

    # -----------------------------------------------------------------
    # SINGLE SUBSET
    # -----------------------------------------------------------------
    def calculate_subset(
        self,
        organization: str,
        vintage: str,
        policies: Sequence[PolicyRow],
    ) -> SubsetResult:
        """
        Incentive for one group of policies. Gate and slab are driven by the
        size of this group only; deferral is not handled here.
        """
        cfg = self.config
        policies = tuple(policies)
        nop = len(policies)

        # ---- Gate (hard stop) ----
        if nop < min_gate_for(vintage):
            return SubsetResult(
                policies=tuple(PolicyOutcome(p, annual_premium_equivalent(p)) for p in policies),
            )

        # ---- Slab ----
        base_from_slab = resolve_slab(cfg.tier_tables, organization, vintage, nop, cfg.above_cap_bonus)
        base_share = base_from_slab / nop if nop > 0 else 0.0

        # ---- ATS booster ----
        ats = average_ticket_size(policies)
        multiplier = resolve_booster_multiplier(cfg.ats_table, ats)

        # ---- Per policy ----
        outcomes: List[PolicyOutcome] = []
        total_payouts = total_penalties = total_boost = total_generated = 0.0
        for policy in policies:
            ape = annual_premium_equivalent(policy)
            fields = policy.fields()
            fields["ape"] = ape
            payouts, penalties = apply_rules(
                policy, cfg.calculation_rules, is_strictly_eligible(policy), fields
            )

            generated = base_share + payouts - penalties
            booster = generated * multiplier
            value = generated + booster

            total_payouts += payouts
            total_penalties += penalties
            total_boost += booster
            total_generated += value

            outcomes.append(PolicyOutcome(
                policy=policy,
                ape=ape,
                additional_payout=payouts,
                total_penalty=penalties,
                booster_amount=booster,
                total_incentive=value,
            ))

        return SubsetResult(
            policies=tuple(outcomes),
            gate_passed=True,
            total_generated=total_generated,
            base_from_slab=base_from_slab,
            total_payouts=total_payouts,
            total_penalties=total_penalties,
            total_boost_amount=total_boost,
            average_ticket_size=ats,
            ats_multiplier=multiplier,
        )

    # -----------------------------------------------------------------
    # FULL SESSION (potential vs immediate)
    # -----------------------------------------------------------------
    def calculate(self, session: SessionInput) -> CalculationResult:
        """
        Run the session twice: all policies (potential) and non-deferred
        policies only (immediate). The difference is deferred.

        If the full session clears the gate but the immediate policies alone do
        not, the immediate policies are released at their value within the full
        session instead of zero.
        """
        all_policies = session.policies
        deferred_flags = [self.is_deferred(p) for p in all_policies]
        immediate = tuple(p for p, d in zip(all_policies, deferred_flags) if not d)

        result_all = self.calculate_subset(session.organization, session.vintage, all_policies)
        result_immediate = self.calculate_subset(session.organization, session.vintage, immediate)

        potential = result_all.total_generated
        gate = min_gate_for(session.vintage)
        fallback = len(all_policies) >= gate and 0 < len(immediate) < gate

        if fallback:
            released = sum(
                o.total_incentive for o, d in zip(result_all.policies, deferred_flags) if not d
            )
        else:
            released = result_immediate.total_generated

        deferred = max(0.0, potential - released)

        outcomes = tuple(replace(o, is_deferred=d) for o, d in zip(result_all.policies, deferred_flags))
        count = len(outcomes)
        breakdown = Breakdown(
            total_base=result_all.base_from_slab,
            total_payouts=result_all.total_payouts,
            total_penalties=result_all.total_penalties,
            total_rate=potential / count if count > 0 else 0.0,
        )

        logger.info(
            f"Session {session.employee_id or session.employee_name or '-'}: "
            f"released ₹{released:,.2f}, deferred ₹{deferred:,.2f}, "
            f"grand total ₹{released + deferred:,.2f}, ATS ₹{result_all.average_ticket_size:,.2f}, "
            f"ATS incentive ₹{result_all.total_boost_amount:,.2f}, base ₹{result_all.base_from_slab:,.2f}"
            f"{' (gate fallback)' if fallback else ''}"
        )

        return CalculationResult(
            session=session,
            policies=outcomes,
            total_incentive=released,
            deferred_incentive=deferred,
            average_ticket_size=result_all.average_ticket_size,
            ats_incentive=result_all.total_boost_amount,
            breakdown=breakdown,
            potential_total=potential,
            fallback_applied=fallback,
            warnings=tuple(self._session_warnings(session, result_all)),
        )

    def _session_warnings(self, session: SessionInput, result_all: SubsetResult) -> List[str]:
        warnings: List[str] = []
        nop = len(session.policies)
        gate = min_gate_for(session.vintage)
        table = find_tier_table(self.config.tier_tables, session.organization, session.vintage)
        if table is not None and table.organization != session.organization:
            message = (
                f"No {normalize_vintage(session.vintage)} tier table for '{session.organization}', "
                f"using the '{table.organization}' table"
            )
            logger.warning(message)
            warnings.append(message)
        if nop < gate:
            warnings.append(f"{nop} policies is below the {normalize_vintage(session.vintage)} gate of {gate}")
        elif result_all.base_from_slab == 0.0:
            warnings.append(
                f"No slab for {session.organization}/{normalize_vintage(session.vintage)} at {nop} policies"
            )
        for rule in self.config.calculation_rules:
            error = check_condition(rule.condition)
            if error:
                warnings.append(f"Rule '{rule.name or rule.rule_id}' ignored: {error}")
        return warnings


def calculate_incentives(config: IncentiveConfig, session: SessionInput) -> CalculationResult:
    return IncentiveEngine(config).calculate(session)


# =============================================================================
# 10. POLICY FILES, SESSION ROLL-UP & WORKFLOW
# =============================================================================

def load_policy_rows(
    filepath: str,
    col_map: Optional[Dict[str, str]] = None,
    config: Optional[IncentiveConfig] = None,
) -> Tuple[Tuple[PolicyRow, ...], List[str]]:
    """
    Load one session's policy rows from a CSV export of the entry sheet.

    Columns are the configured column ids (policyName, paymentAmount,
    paymentFrequency, ciAbove25L, adb, autopay, ...). Use col_map to map
    a column id to a different CSV header, e.g. {"policyName": "Product"}.

    Returns (rows, warnings for skipped rows).
    """
    cfg = config or DEFAULT_CONFIG
    df = pd.read_csv(filepath)
    if col_map:
        df = df.rename(columns={header: column_id for column_id, header in col_map.items()})

    rows: List[PolicyRow] = []
    warnings: List[str] = []
    for idx, row in df.iterrows():
        try:
            data = row.to_dict()
            if not to_text(data.get("id")):
                data["id"] = f"POL-{idx + 1}"
            rows.append(PolicyRow.from_mapping(data, cfg.criterion_columns))
        except (TypeError, ValueError, AttributeError) as e:
            warnings.append(f"Row {idx}: {e}")
            logger.error(f"Row {idx} skipped: {e}")

    logger.info(f"Loaded {len(rows)} policies from {filepath}, skipped {len(warnings)}")
    return tuple(rows), warnings


SUMMARY_COLUMNS = [
    "employee_id", "employee_name", "organization", "vintage", "policies",
    "deferred_policies", "average_ticket_size", "ats_incentive",
    "released_now", "deferred", "potential", "gate_fallback",
]


def summarize_sessions(results: Iterable[CalculationResult]) -> pd.DataFrame:
    """One row per employee session, highest released amount first."""
    rows = [
        {
            "employee_id": r.session.employee_id,
            "employee_name": r.session.employee_name,
            "organization": r.session.organization,
            "vintage": r.session.vintage,
            "policies": len(r.policies),
            "deferred_policies": sum(o.is_deferred for o in r.policies),
            "average_ticket_size": round(r.average_ticket_size, 2),
            "ats_incentive": round(r.ats_incentive, 2),
            "released_now": round(r.total_incentive, 2),
            "deferred": round(r.deferred_incentive, 2),
            "potential": round(r.potential_total, 2),
            "gate_fallback": r.fallback_applied,
        }
        for r in results
    ]
    if not rows:
        logger.warning("No sessions to summarize.")
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
    return summary.sort_values("released_now", ascending=False).reset_index(drop=True)


def run_incentive_session(
    policy_file: str,
    organization: str,
    vintage: str,
    config: Optional[IncentiveConfig] = None,
    employee_id: str = "",
    employee_name: str = "",
    output_prefix: str = "incentive",
    col_map: Optional[Dict[str, str]] = None,
) -> CalculationResult:
    """
    End-to-end session calculation.

    Args:
        policy_file:    CSV export of the policy entry sheet
        organization:   "Inhouse" / "Outsource"
        vintage:        "0-3 Months", "More than 3 Months", "Tier 1", "Tier 2"
        config:         Incentive configuration (defaults to DEFAULT_CONFIG)
        employee_id:    Used in the output file name
        output_prefix:  Prefix for the detail CSV
        col_map:        Column id -> CSV header overrides

    Returns:
        The calculation result, including rows skipped while loading as warnings
    """
    cfg = config or DEFAULT_CONFIG
    for problem in cfg.validate():
        logger.warning(f"Config: {problem}")

    policies, load_warnings = load_policy_rows(policy_file, col_map=col_map, config=cfg)
    session = SessionInput(
        organization=organization,
        vintage=vintage,
        policies=policies,
        month=cfg.month,
        employee_name=employee_name,
        employee_id=employee_id,
    )
    result = IncentiveEngine(cfg).calculate(session)
    result = replace(result, warnings=tuple(load_warnings) + result.warnings)

    result.export(f"{output_prefix}_{employee_id or 'session'}.csv")
    result.print_summary()
    return result


# =============================================================================
# 11. EXAMPLE EXECUTION
# =============================================================================

if __name__ == "__main__":

    engine = IncentiveEngine(DEFAULT_CONFIG)

    def row(pid: str, name: str, amount: float, frequency: str, **flags: Any) -> PolicyRow:
        data = {"id": pid, "policyName": name, "paymentType": "Regular",
                "paymentAmount": amount, "paymentFrequency": frequency}
        data.update(flags)
        return PolicyRow.from_mapping(data, DEFAULT_COLUMNS)

    # --- Scenario 1: Tier 1, four monthly Etouch policies with autopay ---
    print("\n--- SCENARIO 1: Tier 1, gate met ---")
    result = engine.calculate(SessionInput("Inhouse", "Tier 1", [
        row(f"P{i}", "Etouch", 10000, "Monthly", autopay=True) for i in range(1, 5)
    ], employee_name="Test Agent"))
    result.print_summary()

    # --- Scenario 2: one deferred sachet drops the rest below the gate ---
    print("\n--- SCENARIO 2: Deferred sachet, gate fallback ---")
    result = engine.calculate(SessionInput("Inhouse", "Tier 1", [
        row("P1", "I-Secure sachet", 3000, "Monthly"),
        row("P2", "Etouch", 25000, "Annual", ekyc=True, ciAbove25L=True, adb=True),
        row("P3", "Etouch", 2500, "Monthly", autopay=True),
        row("P4", "I-Secure", 30000, "Annual"),
    ], employee_name="Test Agent"))
    result.print_summary()

    # --- Config problems ---
    for problem in DEFAULT_CONFIG.validate():
        print(f"  CONFIG: {problem}")
