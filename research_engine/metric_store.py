"""
Metric Store Module - DuckDB persistence for research metrics

Handles:
- Categories and their cached constants (fees, tier estimate, ads defaults)
- Datasets (detected month, sheet inventory, ingestion status)
- MetricRecords with replace-by-source-sheet semantics
- Read-only rule tables (referral fee, size tier, FBA fee)

Deleting a dataset removes its records; deleting a category removes its
datasets and records.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import duckdb

from research_engine.config import STORE_PATH
from research_engine.errors import PersistenceError
from research_engine.logger import get_logger
from research_engine.models import (
    CATEGORY_CONSTANT_FIELDS,
    Category,
    Dataset,
    FbaFeeRule,
    MetricRecord,
    OverageRule,
    ReferralFeeRule,
    SheetInfo,
    SizeTierRule,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = get_logger(__name__)

_RECORD_COLUMNS = (
    "record_id, dataset_id, category_id, metric, bucket, value, unit, source_sheet, "
    "sample_size, sample_type, fee_percent, base_price, created_at"
)
_CATEGORY_COLUMNS = "id, name, description, " + ", ".join(CATEGORY_CONSTANT_FIELDS)
_DATASET_COLUMNS = (
    "id, category_id, original_filename, time_range_from, time_range_to, status, sheets, created_at"
)


class DuckDBMetricStore:
    """
    Persistence boundary for the ingestion engine.

    Stores categories, datasets, metric records and rule tables in DuckDB.
    Use ":memory:" for an ephemeral store.
    """

    def __init__(self, store_path: str | Path | None = None):
        """
        Initialize the store.

        Args:
            store_path: Path to the DuckDB file, or ":memory:".
                        If None, uses default STORE_PATH.
        """
        if store_path is None:
            store_path = STORE_PATH

        self.store_path = str(store_path)
        if self.store_path != ":memory:":
            Path(self.store_path).parent.mkdir(parents=True, exist_ok=True)

        self.con = duckdb.connect(self.store_path)
        self._ensure_schema()

    def __enter__(self) -> DuckDBMetricStore:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        """Create tables, sequences and indexes if they don't exist."""
        for seq in ("category_id_seq", "dataset_id_seq", "record_id_seq"):
            self.con.execute(f"CREATE SEQUENCE IF NOT EXISTS {seq} START 1")

        constant_columns = ",\n".join(
            f"{name} {'VARCHAR' if name == 'size_tier_estimate' else 'DOUBLE'}"
            for name in CATEGORY_CONSTANT_FIELDS
        )
        self.con.execute(f"""
            CREATE TABLE IF NOT EXISTS categories (
                id BIGINT PRIMARY KEY,
                name VARCHAR NOT NULL,
                description VARCHAR,
                {constant_columns},
                created_at TIMESTAMP
            )
        """)
        self.con.execute("""
            CREATE TABLE IF NOT EXISTS datasets (
                id BIGINT PRIMARY KEY,
                category_id BIGINT NOT NULL,
                original_filename VARCHAR,
                time_range_from VARCHAR,
                time_range_to VARCHAR,
                status VARCHAR,
                sheets VARCHAR,
                created_at TIMESTAMP
            )
        """)
        self.con.execute("""
            CREATE TABLE IF NOT EXISTS metric_records (
                record_id BIGINT,
                dataset_id BIGINT NOT NULL,
                category_id BIGINT NOT NULL,
                metric VARCHAR NOT NULL,
                bucket VARCHAR NOT NULL,
                value DOUBLE NOT NULL,
                unit VARCHAR NOT NULL,
                source_sheet VARCHAR NOT NULL,
                sample_size DOUBLE,
                sample_type VARCHAR,
                fee_percent DOUBLE,
                base_price DOUBLE,
                created_at TIMESTAMP
            )
        """)
        self.con.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_dataset_sheet
            ON metric_records (dataset_id, source_sheet)
        """)
        self.con.execute("""
            CREATE TABLE IF NOT EXISTS referral_fee_rules (
                position INTEGER,
                category VARCHAR,
                price_min DOUBLE,
                price_max DOUBLE,
                fee_percent DOUBLE,
                apply_to VARCHAR,
                min_fee_usd DOUBLE
            )
        """)
        self.con.execute("""
            CREATE TABLE IF NOT EXISTS size_tier_rules (
                position INTEGER,
                tier VARCHAR,
                longest_max DOUBLE,
                median_max DOUBLE,
                shortest_max DOUBLE,
                length_girth_max DOUBLE,
                shipping_weight_max DOUBLE,
                unit_length VARCHAR,
                unit_weight VARCHAR
            )
        """)
        self.con.execute("""
            CREATE TABLE IF NOT EXISTS fba_fee_rules (
                position INTEGER,
                tier VARCHAR,
                unit VARCHAR,
                weight_min DOUBLE,
                weight_max DOUBLE,
                fee_usd DOUBLE,
                base_usd DOUBLE,
                overage_rules VARCHAR
            )
        """)

    def _execute(self, query: str, params: Sequence[Any] | None = None) -> duckdb.DuckDBPyConnection:
        try:
            return self.con.execute(query, list(params or []))
        except duckdb.Error as e:
            raise PersistenceError(f"Store query failed: {e}") from e

    def _next_id(self, sequence: str) -> int:
        return int(self._execute(f"SELECT nextval('{sequence}')").fetchone()[0])

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    def create_category(self, name: str, description: str | None = None) -> Category:
        category_id = self._next_id("category_id_seq")
        self._execute(
            "INSERT INTO categories (id, name, description, created_at) VALUES (?, ?, ?, ?)",
            [category_id, name, description, datetime.now()],
        )
        logger.debug(f"Created category {category_id} ({name})")
        return Category(id=category_id, name=name, description=description)

    @staticmethod
    def _row_to_category(row: Sequence[Any]) -> Category:
        values = dict(zip(_CATEGORY_COLUMNS.split(", "), row))
        return Category(**values)

    def get_category(self, category_id: int) -> Category | None:
        row = self._execute(
            f"SELECT {_CATEGORY_COLUMNS} FROM categories WHERE id = ?", [category_id]
        ).fetchone()
        return self._row_to_category(row) if row else None

    def find_category_by_name(self, name: str) -> Category | None:
        row = self._execute(
            f"SELECT {_CATEGORY_COLUMNS} FROM categories WHERE lower(name) = lower(?) ORDER BY id LIMIT 1",
            [name],
        ).fetchone()
        return self._row_to_category(row) if row else None

    def get_or_create_category(self, name: str) -> Category:
        return self.find_category_by_name(name) or self.create_category(name)

    def list_categories(self) -> list[Category]:
        rows = self._execute(f"SELECT {_CATEGORY_COLUMNS} FROM categories ORDER BY id").fetchall()
        return [self._row_to_category(r) for r in rows]

    def update_category_constants(self, category_id: int, fields: dict[str, Any]) -> int:
        """
        Write computed constants onto a category.

        Args:
            category_id: Category to update.
            fields: Mapping of constant name -> value (see CATEGORY_CONSTANT_FIELDS).

        Returns:
            Number of fields written.
        """
        unknown = set(fields) - set(CATEGORY_CONSTANT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown category constant(s): {sorted(unknown)}")
        if not fields:
            return 0
        assignments = ", ".join(f"{name} = ?" for name in fields)
        self._execute(
            f"UPDATE categories SET {assignments} WHERE id = ?",
            list(fields.values()) + [category_id],
        )
        logger.debug(f"Updated category {category_id} constants: {sorted(fields)}")
        return len(fields)

    def delete_category(self, category_id: int) -> None:
        """Delete a category with its datasets and records."""
        self._execute("DELETE FROM metric_records WHERE category_id = ?", [category_id])
        self._execute("DELETE FROM datasets WHERE category_id = ?", [category_id])
        self._execute("DELETE FROM categories WHERE id = ?", [category_id])

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    def create_dataset(self, dataset: Dataset) -> Dataset:
        dataset.id = self._next_id("dataset_id_seq")
        dataset.created_at = datetime.now()
        sheets = json.dumps([vars(s) for s in dataset.sheets])
        self._execute(
            f"INSERT INTO datasets ({_DATASET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                dataset.id,
                dataset.category_id,
                dataset.original_filename,
                dataset.time_range_from,
                dataset.time_range_to,
                dataset.status,
                sheets,
                dataset.created_at,
            ],
        )
        return dataset

    @staticmethod
    def _row_to_dataset(row: Sequence[Any]) -> Dataset:
        (dataset_id, category_id, filename, range_from, range_to, status, sheets, created_at) = row
        return Dataset(
            id=dataset_id,
            category_id=category_id,
            original_filename=filename or "",
            time_range_from=range_from,
            time_range_to=range_to,
            status=status,
            sheets=[SheetInfo(**s) for s in json.loads(sheets or "[]")],
            created_at=created_at,
        )

    def get_dataset(self, dataset_id: int) -> Dataset | None:
        row = self._execute(
            f"SELECT {_DATASET_COLUMNS} FROM datasets WHERE id = ?", [dataset_id]
        ).fetchone()
        return self._row_to_dataset(row) if row else None

    def find_datasets(self, category_id: int, filename_pattern: str | None = None) -> list[Dataset]:
        """
        Datasets of a category, newest first.

        Args:
            category_id: Owning category.
            filename_pattern: Optional case-insensitive regex on the original filename.
        """
        query = f"SELECT {_DATASET_COLUMNS} FROM datasets WHERE category_id = ?"
        params: list[Any] = [category_id]
        if filename_pattern:
            query += " AND regexp_matches(original_filename, ?, 'i')"
            params.append(filename_pattern)
        query += " ORDER BY created_at DESC, id DESC"
        return [self._row_to_dataset(r) for r in self._execute(query, params).fetchall()]

    def set_dataset_status(self, dataset_id: int, status: str) -> None:
        self._execute("UPDATE datasets SET status = ? WHERE id = ?", [status, dataset_id])

    def delete_dataset(self, dataset_id: int) -> None:
        """Delete a dataset and its records."""
        self._execute("DELETE FROM metric_records WHERE dataset_id = ?", [dataset_id])
        self._execute("DELETE FROM datasets WHERE id = ?", [dataset_id])

    # ------------------------------------------------------------------
    # Metric records
    # ------------------------------------------------------------------

    def insert_records(self, records: Iterable[MetricRecord]) -> int:
        rows = []
        timestamp = datetime.now()
        for record in records:
            record.record_id = self._next_id("record_id_seq")
            record.created_at = timestamp
            rows.append([
                record.record_id,
                record.dataset_id,
                record.category_id,
                record.metric,
                record.bucket,
                float(record.value),
                record.unit,
                record.source_sheet,
                record.sample_size,
                record.sample_type,
                record.fee_percent,
                record.base_price,
                record.created_at,
            ])
        if not rows:
            return 0
        try:
            self.con.executemany(
                f"INSERT INTO metric_records ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        except duckdb.Error as e:
            raise PersistenceError(f"Failed to insert {len(rows)} metric records: {e}") from e
        return len(rows)

    def replace_sheet_records(self, dataset_id: int, source_sheet: str, records: Sequence[MetricRecord]) -> int:
        """
        Replace every record of (dataset_id, source_sheet) with `records`.

        Delete then insert; not transactional, so a failure between the two
        leaves the sheet empty until it is re-ingested.

        Returns:
            Number of records inserted.
        """
        self._execute(
            "DELETE FROM metric_records WHERE dataset_id = ? AND source_sheet = ?",
            [dataset_id, source_sheet],
        )
        inserted = self.insert_records(records)
        logger.debug(f"Replaced {source_sheet} records for dataset {dataset_id}: {inserted} inserted")
        return inserted

    def replace_metric_records(
        self,
        dataset_id: int,
        metrics: Sequence[str],
        bucket: str,
        records: Sequence[MetricRecord],
    ) -> int:
        """Replace records of the given metrics in one bucket, whatever their source sheet."""
        placeholders = ",".join(["?" for _ in metrics])
        self._execute(
            f"DELETE FROM metric_records WHERE dataset_id = ? AND bucket = ? AND metric IN ({placeholders})",
            [dataset_id, bucket] + list(metrics),
        )
        return self.insert_records(records)

    @staticmethod
    def _row_to_record(row: Sequence[Any]) -> MetricRecord:
        (record_id, dataset_id, category_id, metric, bucket, value, unit, source_sheet,
         sample_size, sample_type, fee_percent, base_price, created_at) = row
        return MetricRecord(
            dataset_id=dataset_id,
            category_id=category_id,
            metric=metric,
            bucket=bucket,
            value=value,
            unit=unit,
            source_sheet=source_sheet,
            sample_size=sample_size,
            sample_type=sample_type,
            fee_percent=fee_percent,
            base_price=base_price,
            created_at=created_at,
            record_id=record_id,
        )

    def _record_filters(
        self,
        dataset_id: int | None = None,
        dataset_ids: Sequence[int] | None = None,
        category_id: int | None = None,
        metrics: Sequence[str] | None = None,
        bucket: str | None = None,
        bucket_from: str | None = None,
        bucket_to: str | None = None,
        source_sheet: str | None = None,
        source_sheet_pattern: str | None = None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if dataset_id is not None:
            clauses.append("dataset_id = ?")
            params.append(dataset_id)
        if dataset_ids is not None:
            if not dataset_ids:
                clauses.append("FALSE")
            else:
                clauses.append(f"dataset_id IN ({','.join(['?' for _ in dataset_ids])})")
                params.extend(dataset_ids)
        if category_id is not None:
            clauses.append("category_id = ?")
            params.append(category_id)
        if metrics:
            clauses.append(f"metric IN ({','.join(['?' for _ in metrics])})")
            params.extend(metrics)
        if bucket is not None:
            clauses.append("bucket = ?")
            params.append(bucket)
        if bucket_from:
            clauses.append("bucket >= ?")
            params.append(bucket_from)
        if bucket_to:
            clauses.append("bucket <= ?")
            params.append(bucket_to)
        if source_sheet is not None:
            clauses.append("source_sheet = ?")
            params.append(source_sheet)
        if source_sheet_pattern:
            clauses.append("regexp_matches(source_sheet, ?, 'i')")
            params.append(source_sheet_pattern)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    def find_records(self, **filters: Any) -> list[MetricRecord]:
        """Records matching the filters, oldest first (see `_record_filters`)."""
        where, params = self._record_filters(**filters)
        rows = self._execute(
            f"SELECT {_RECORD_COLUMNS} FROM metric_records{where} ORDER BY bucket, record_id",
            params,
        ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def latest_record(self, metric: str, **filters: Any) -> MetricRecord | None:
        """Most recently created record of a metric matching the filters."""
        where, params = self._record_filters(metrics=[metric], **filters)
        row = self._execute(
            f"SELECT {_RECORD_COLUMNS} FROM metric_records{where} ORDER BY record_id DESC LIMIT 1",
            params,
        ).fetchone()
        return self._row_to_record(row) if row else None

    def update_record_bucket(self, record_id: int, bucket: str) -> None:
        self._execute("UPDATE metric_records SET bucket = ? WHERE record_id = ?", [bucket, record_id])

    # ------------------------------------------------------------------
    # Rule tables
    # ------------------------------------------------------------------

    def save_referral_fee_rules(self, rules: Sequence[ReferralFeeRule]) -> int:
        self._execute("DELETE FROM referral_fee_rules")
        for position, r in enumerate(rules):
            self._execute(
                "INSERT INTO referral_fee_rules VALUES (?, ?, ?, ?, ?, ?, ?)",
                [position, r.category, r.price_min, r.price_max, r.fee_percent, r.apply_to, r.min_fee_usd],
            )
        return len(rules)

    def referral_fee_rules(self) -> list[ReferralFeeRule]:
        rows = self._execute("""
            SELECT category, price_min, price_max, fee_percent, apply_to, min_fee_usd
            FROM referral_fee_rules
            ORDER BY position
        """).fetchall()
        return [
            ReferralFeeRule(
                category=category,
                price_min=price_min,
                price_max=price_max,
                fee_percent=fee_percent,
                apply_to=apply_to or "total",
                min_fee_usd=min_fee,
            )
            for category, price_min, price_max, fee_percent, apply_to, min_fee in rows
        ]

    def save_size_tier_rules(self, rules: Sequence[SizeTierRule]) -> int:
        self._execute("DELETE FROM size_tier_rules")
        for position, r in enumerate(rules):
            self._execute(
                "INSERT INTO size_tier_rules VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    position, r.tier, r.longest_max, r.median_max, r.shortest_max,
                    r.length_girth_max, r.shipping_weight_max, r.unit_length, r.unit_weight,
                ],
            )
        return len(rules)

    def size_tier_rules(self) -> list[SizeTierRule]:
        rows = self._execute("""
            SELECT tier, longest_max, median_max, shortest_max, length_girth_max,
                   shipping_weight_max, unit_length, unit_weight
            FROM size_tier_rules
            ORDER BY position
        """).fetchall()
        return [
            SizeTierRule(
                tier=tier,
                longest_max=longest,
                median_max=median,
                shortest_max=shortest,
                length_girth_max=girth,
                shipping_weight_max=weight,
                unit_length=unit_length or "in",
                unit_weight=unit_weight or "lb",
            )
            for tier, longest, median, shortest, girth, weight, unit_length, unit_weight in rows
        ]

    def save_fba_fee_rules(self, rules: Sequence[FbaFeeRule]) -> int:
        self._execute("DELETE FROM fba_fee_rules")
        for position, r in enumerate(rules):
            overage = json.dumps([vars(o) for o in r.overage_rules])
            self._execute(
                "INSERT INTO fba_fee_rules VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [position, r.tier, r.unit, r.weight_min, r.weight_max, r.fee_usd, r.base_usd, overage],
            )
        return len(rules)

    def fba_fee_rules(self) -> list[FbaFeeRule]:
        """FBA fee rules in table order."""
        rows = self._execute(
            "SELECT tier, unit, weight_min, weight_max, fee_usd, base_usd, overage_rules FROM fba_fee_rules"
            " ORDER BY position"
        ).fetchall()
        return [
            FbaFeeRule(
                tier=tier_name,
                unit=unit or "oz",
                weight_min=weight_min,
                weight_max=weight_max,
                fee_usd=fee_usd,
                base_usd=base_usd,
                overage_rules=[OverageRule(**o) for o in json.loads(overage or "[]")],
            )
            for tier_name, unit, weight_min, weight_max, fee_usd, base_usd, overage in rows
        ]

    def close(self) -> None:
        """Close the DuckDB connection."""
        self.con.close()
