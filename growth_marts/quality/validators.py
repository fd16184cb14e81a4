"""
Data Validation Module

Rule-based quality checks over the built marts, in the spirit of
Great Expectations suites.

Checks cover:
- Business rules (non-negative spend, net revenue within gross)
- Referential integrity of facts against dimensions
- Natural-key uniqueness
- Calendar continuity
- Cohort metric bounds and monotonicity
- Non-empty fact and cohort tables

Every check runs regardless of earlier failures and nothing is written.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import polars as pl
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.database.models import (
    Cohort,
    DimCampaign,
    DimChannel,
    DimDate,
    FactOrder,
    FactSpend,
    FactTraffic,
)
from growth_marts.transformation.cleaners import to_cents

logger = structlog.get_logger(__name__)


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"  # Critical - fails the run
    WARNING = "warning"  # Non-critical - logged but continues


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class CheckResult:
    """Single validation check result"""
    check: str
    passed: bool
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    failed_rows: int = 0
    total_rows: int = 0
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"check": self.check, "passed": self.passed, "message": self.message}


@dataclass
class ValidationResult:
    """Complete validation suite result"""
    status: ValidationStatus
    total_checks: int
    passed_checks: int
    failed_checks: int
    warning_count: int
    checks: List[CheckResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


class DataValidator:
    """
    Check suite over one DataFrame.

    Example:
        validator = (
            DataValidator("fact_spend")
            .add_range_check("spend_cents", min_value=0, name="no_negative_spend")
            .add_unique_check(["date", "channel_id", "campaign_key"])
        )
        result = validator.validate(spend_df)
    """

    def __init__(self, table: str = "dataframe", strict_mode: bool = False):
        self.table = table
        self.strict_mode = strict_mode  # Fail on any warning
        self._checks: List[Callable[[pl.DataFrame], CheckResult]] = []

    @staticmethod
    def _missing(df: pl.DataFrame, columns: Sequence[str]) -> List[str]:
        return [c for c in columns if c not in df.columns]

    def add_not_empty_check(
        self,
        name: Optional[str] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check that the frame has at least one row"""
        check_name = name or f"{self.table}_not_empty"

        def check(df: pl.DataFrame) -> CheckResult:
            passed = df.height > 0
            return CheckResult(
                check=check_name,
                passed=passed,
                severity=severity,
                message=f"{self.table} has {df.height} rows" if passed else f"{self.table} is empty",
                total_rows=df.height,
            )

        self._checks.append(check)
        return self

    def add_unique_check(
        self,
        columns: Sequence[str],
        name: Optional[str] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check that a (possibly composite) key has no duplicates"""
        columns = list(columns)
        check_name = name or f"unique_{'_'.join(columns)}"

        def check(df: pl.DataFrame) -> CheckResult:
            missing = self._missing(df, columns)
            if missing:
                return CheckResult(check_name, False, f"Columns not found: {missing}", severity)

            total = df.height
            duplicate_count = total - df.select(columns).unique().height
            passed = duplicate_count == 0
            return CheckResult(
                check=check_name,
                passed=passed,
                severity=severity,
                message=(
                    f"{self.table} has {duplicate_count} duplicate keys on {columns}"
                    if not passed else f"{self.table} keys {columns} are unique"
                ),
                failed_rows=duplicate_count,
                total_rows=total,
                details={"duplicate_count": duplicate_count},
            )

        self._checks.append(check)
        return self

    def add_range_check(
        self,
        column: str,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        name: Optional[str] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for values within specified range"""
        check_name = name or f"range_{column}"

        def check(df: pl.DataFrame) -> CheckResult:
            if column not in df.columns:
                return CheckResult(check_name, False, f"Column '{column}' not found", severity)

            conditions = []
            if min_value is not None:
                conditions.append(pl.col(column) < min_value)
            if max_value is not None:
                conditions.append(pl.col(column) > max_value)
            if not conditions:
                return CheckResult(check_name, True, "No range specified", severity)

            # Combine conditions with OR
            combined = conditions[0]
            for cond in conditions[1:]:
                combined = combined | cond

            out_of_range = df.filter(combined).height
            passed = out_of_range == 0
            return CheckResult(
                check=check_name,
                passed=passed,
                severity=severity,
                message=(
                    f"Column '{column}' has {out_of_range} values outside range [{min_value}, {max_value}]"
                    if not passed else "All values in range"
                ),
                failed_rows=out_of_range,
                total_rows=df.height,
                details={"min": min_value, "max": max_value, "out_of_range_count": out_of_range},
            )

        self._checks.append(check)
        return self

    def add_row_rule_check(
        self,
        name: str,
        rule: pl.Expr,
        description: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check that every row satisfies a boolean expression"""
        def check(df: pl.DataFrame) -> CheckResult:
            try:
                violations = df.filter(~rule).height
            except pl.exceptions.PolarsError as e:
                return CheckResult(name, False, f"Check failed with error: {e}", severity)
            passed = violations == 0
            return CheckResult(
                check=name,
                passed=passed,
                severity=severity,
                message=f"{violations} rows violate: {description}" if not passed else f"All rows satisfy: {description}",
                failed_rows=violations,
                total_rows=df.height,
            )

        self._checks.append(check)
        return self

    def add_referential_integrity_check(
        self,
        column: str,
        reference_df: pl.DataFrame,
        reference_column: str,
        name: Optional[str] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check that every non-null value exists in the reference column"""
        check_name = name or f"ref_integrity_{column}"

        def check(df: pl.DataFrame) -> CheckResult:
            if column not in df.columns:
                return CheckResult(check_name, False, f"Column '{column}' not found", severity)

            ref_values = reference_df.select(pl.col(reference_column).alias(column)).unique()
            orphans = (
                df.filter(pl.col(column).is_not_null())
                .join(ref_values, on=column, how="anti")
                .height
            )
            passed = orphans == 0
            return CheckResult(
                check=check_name,
                passed=passed,
                severity=severity,
                message=(
                    f"Column '{column}' has {orphans} orphan records" if not passed
                    else "Referential integrity maintained"
                ),
                failed_rows=orphans,
                total_rows=df.height,
                details={"orphan_count": orphans},
            )

        self._checks.append(check)
        return self

    def add_custom_check(
        self,
        name: str,
        check_func: Callable[[pl.DataFrame], bool],
        message_on_fail: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add custom validation check"""
        def check(df: pl.DataFrame) -> CheckResult:
            try:
                passed = bool(check_func(df))
            except pl.exceptions.PolarsError as e:
                return CheckResult(name, False, f"Check failed with error: {e}", severity)
            return CheckResult(
                check=name,
                passed=passed,
                severity=severity,
                message="Check passed" if passed else message_on_fail,
                total_rows=df.height,
            )

        self._checks.append(check)
        return self

    def validate(self, df: pl.DataFrame) -> ValidationResult:
        """
        Run all validation checks on DataFrame.

        Args:
            df: DataFrame to validate

        Returns:
            ValidationResult with all check results
        """
        started_at = datetime.utcnow()
        results = []

        for check_func in self._checks:
            result = check_func(df)
            results.append(result)

            if not result.passed:
                logger.warning(
                    "Validation check failed",
                    check=result.check,
                    table=self.table,
                    message=result.message,
                    severity=result.severity.value,
                )

        passed_checks = sum(1 for r in results if r.passed)
        failed_checks = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.WARNING)

        if failed_checks > 0 or (warning_count > 0 and self.strict_mode):
            status = ValidationStatus.FAILED
        elif warning_count > 0:
            status = ValidationStatus.PARTIAL
        else:
            status = ValidationStatus.PASSED

        return ValidationResult(
            status=status,
            total_checks=len(results),
            passed_checks=passed_checks,
            failed_checks=failed_checks,
            warning_count=warning_count,
            checks=results,
            started_at=started_at,
            completed_at=datetime.utcnow(),
        )


# =============================================================================
# MART SUITES
# =============================================================================

def dates_are_continuous(df: pl.DataFrame) -> bool:
    """True when full_date covers every day between its min and max"""
    if df.is_empty():
        return False
    days = df["full_date"].unique()
    span = (days.max() - days.min()) // timedelta(days=1) + 1
    return days.len() == span


def cohorts_monotonic(columns: Sequence[str]) -> pl.Expr:
    """Row rule: each column is <= the next one"""
    rule = pl.lit(True)
    for lower, upper in zip(columns, columns[1:]):
        rule = rule & (pl.col(lower) <= pl.col(upper))
    return rule


RETENTION_COLUMNS = ["d7_retention", "d30_retention", "d60_retention", "d90_retention"]
LTV_COLUMNS = ["ltv30_cents", "ltv90_cents", "ltv180_cents"]


def create_orders_validator(channels: pl.DataFrame, campaigns: pl.DataFrame) -> DataValidator:
    return (
        DataValidator("fact_orders")
        .add_not_empty_check(name="orders_not_empty")
        .add_unique_check(["order_id"], name="no_duplicate_orders")
        .add_row_rule_check(
            "revenue_net_lte_gross",
            pl.col("revenue_net_cents") <= pl.col("revenue_gross_cents"),
            "revenue_net <= revenue_gross",
        )
        .add_referential_integrity_check("channel_id", channels, "id", name="fk_orders_channel")
        .add_referential_integrity_check("campaign_id", campaigns, "id", name="fk_orders_campaign")
    )


def create_spend_validator(channels: pl.DataFrame, campaigns: pl.DataFrame) -> DataValidator:
    return (
        DataValidator("fact_spend")
        .add_not_empty_check(name="spend_not_empty")
        .add_unique_check(["date", "channel_id", "campaign_key"], name="no_duplicate_spend_keys")
        .add_range_check("spend_cents", min_value=0, name="no_negative_spend")
        .add_referential_integrity_check("channel_id", channels, "id", name="fk_spend_channel")
        .add_referential_integrity_check("campaign_id", campaigns, "id", name="fk_spend_campaign")
    )


def create_traffic_validator(channels: pl.DataFrame) -> DataValidator:
    return (
        DataValidator("fact_traffic")
        .add_not_empty_check(name="traffic_not_empty")
        .add_unique_check(["date", "channel_id"], name="no_duplicate_traffic_keys")
        .add_referential_integrity_check("channel_id", channels, "id", name="fk_traffic_channel")
    )


def create_dates_validator() -> DataValidator:
    return DataValidator("dim_date").add_custom_check(
        "continuous_dates",
        dates_are_continuous,
        "dim_date has gaps or is empty",
    )


def create_cohorts_validator() -> DataValidator:
    return (
        DataValidator("cohorts")
        .add_not_empty_check(name="cohorts_not_empty")
        .add_row_rule_check("cohort_size_positive", pl.col("cohort_size") > 0, "cohort_size > 0")
        .add_row_rule_check(
            "retention_bounded_monotonic",
            cohorts_monotonic(RETENTION_COLUMNS)
            & (pl.col(RETENTION_COLUMNS[0]) >= 0)
            & (pl.col(RETENTION_COLUMNS[-1]) <= 1),
            "0 <= d7 <= d30 <= d60 <= d90 <= 1",
        )
        .add_row_rule_check("ltv_monotonic", cohorts_monotonic(LTV_COLUMNS), "ltv30 <= ltv90 <= ltv180")
    )


async def load_mart_frames(session: AsyncSession) -> Dict[str, pl.DataFrame]:
    """Read the marts into DataFrames; ids as text, money as integer cents"""

    def _id(value: Any) -> Optional[str]:
        return str(value) if value is not None else None

    result = await session.execute(select(DimChannel.id))
    channels = pl.DataFrame({"id": [_id(r) for r in result.scalars()]}, schema={"id": pl.Utf8})

    result = await session.execute(select(DimCampaign.id))
    campaigns = pl.DataFrame({"id": [_id(r) for r in result.scalars()]}, schema={"id": pl.Utf8})

    result = await session.execute(select(DimDate.full_date))
    dates = pl.DataFrame({"full_date": list(result.scalars())}, schema={"full_date": pl.Date})

    result = await session.execute(
        select(FactOrder.order_id, FactOrder.revenue_gross, FactOrder.revenue_net, FactOrder.channel_id, FactOrder.campaign_id)
    )
    orders = pl.DataFrame(
        [(oid, to_cents(gross), to_cents(net), _id(ch), _id(cp)) for oid, gross, net, ch, cp in result.all()],
        schema={
            "order_id": pl.Utf8,
            "revenue_gross_cents": pl.Int64,
            "revenue_net_cents": pl.Int64,
            "channel_id": pl.Utf8,
            "campaign_id": pl.Utf8,
        },
        orient="row",
    )

    result = await session.execute(
        select(FactSpend.date, FactSpend.channel_id, FactSpend.campaign_id, FactSpend.campaign_key, FactSpend.spend)
    )
    spend = pl.DataFrame(
        [(day, _id(ch), _id(cp), key, to_cents(amount)) for day, ch, cp, key, amount in result.all()],
        schema={
            "date": pl.Date,
            "channel_id": pl.Utf8,
            "campaign_id": pl.Utf8,
            "campaign_key": pl.Utf8,
            "spend_cents": pl.Int64,
        },
        orient="row",
    )

    result = await session.execute(select(FactTraffic.date, FactTraffic.channel_id))
    traffic = pl.DataFrame(
        [(day, _id(ch)) for day, ch in result.all()],
        schema={"date": pl.Date, "channel_id": pl.Utf8},
        orient="row",
    )

    result = await session.execute(select(Cohort))
    cohorts = pl.DataFrame(
        [
            (
                c.cohort_month,
                c.cohort_size,
                c.d7_retention,
                c.d30_retention,
                c.d60_retention,
                c.d90_retention,
                to_cents(c.ltv30),
                to_cents(c.ltv90),
                to_cents(c.ltv180),
            )
            for c in result.scalars()
        ],
        schema={
            "cohort_month": pl.Utf8,
            "cohort_size": pl.Int64,
            **{col: pl.Float64 for col in RETENTION_COLUMNS},
            **{col: pl.Int64 for col in LTV_COLUMNS},
        },
        orient="row",
    )

    return {
        "channels": channels,
        "campaigns": campaigns,
        "dates": dates,
        "orders": orders,
        "spend": spend,
        "traffic": traffic,
        "cohorts": cohorts,
    }


def run_suites(frames: Dict[str, pl.DataFrame]) -> List[CheckResult]:
    """Run every mart suite over pre-loaded frames"""
    suites = [
        (create_spend_validator(frames["channels"], frames["campaigns"]), frames["spend"]),
        (create_orders_validator(frames["channels"], frames["campaigns"]), frames["orders"]),
        (create_dates_validator(), frames["dates"]),
        (create_traffic_validator(frames["channels"]), frames["traffic"]),
        (create_cohorts_validator(), frames["cohorts"]),
    ]
    checks: List[CheckResult] = []
    for validator, df in suites:
        checks.extend(validator.validate(df).checks)
    return checks


async def validate_marts(session: AsyncSession) -> List[CheckResult]:
    """
    Run every quality check against the current marts.

    Returns:
        One CheckResult per check, failures included
    """
    frames = await load_mart_frames(session)
    checks = run_suites(frames)

    failed = [c.check for c in checks if not c.passed]
    logger.info(
        "Mart validation complete",
        total=len(checks),
        passed=len(checks) - len(failed),
        failed=failed,
    )
    return checks
