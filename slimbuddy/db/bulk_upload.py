"""
Bulk-load a weight or body measurement history CSV.

    python -m slimbuddy.db.bulk_upload weights.csv --user-id <uuid>
    python -m slimbuddy.db.bulk_upload measurements.csv --user-id <uuid> --measurements

Weight columns: ``date`` plus one of ``kg``, ``lbs`` or ``stones``/``pounds``,
and an optional ``notes``.

Measurement columns: ``date``, any of bust, waist, hips, neck, arm, under_bust,
thighs, knees, ankles, and an optional ``notes``. Each cell may carry its own
``in`` or ``cm`` suffix ("46 in", "99cm"); bare numbers use ``--unit``.

Every row goes through the same normalization as the API, and if any row is
rejected nothing is written. Rows are inserted in batches of BATCH_SIZE, so a
store failure partway leaves the earlier batches in place; the error names the
failed batch and how many rows were already written.
"""
import argparse
import csv
import re
import sys
from typing import Dict, Iterable, List

from supabase import create_client

from slimbuddy.app.database import SupabaseSettings
from slimbuddy.app.logging_config import MissingField, ValidationError
from slimbuddy.app.units import LENGTH_UNITS, MEASUREMENT_FIELDS, unit_normalizer

BATCH_SIZE = 500

LENGTH_CELL = re.compile(r"^(?P<number>[-+0-9.eE]+)\s*(?P<unit>in|cm)?$", re.IGNORECASE)


class RowError(ValueError):
    def __init__(self, line: int, error: ValidationError):
        super().__init__(f"line {line}: {error.message}")
        self.line = line
        self.error = error


class UploadError(RuntimeError):
    """A batch insert failed; ``written`` rows from earlier batches are already stored"""
    def __init__(self, table: str, batch: int, first: int, last: int, written: int, cause: Exception):
        super().__init__(
            f"{table} batch {batch} (rows {first}-{last}) failed after {written} rows were written: {cause}"
        )
        self.table = table
        self.batch = batch
        self.written = written


def _unit_for(row: Dict[str, str]):
    if (row.get("stones") or "").strip():
        return "st_lbs", None
    if (row.get("lbs") or "").strip():
        return "lbs", row["lbs"]
    return "kg", row.get("kg")


def build_weight_rows(user_id: str, records: Iterable[Dict[str, str]]) -> List[dict]:
    """Normalize CSV records to weight_logs rows; raises RowError naming the first bad line"""
    rows = []
    # Line 1 is the header
    for line, record in enumerate(records, start=2):
        unit, value = _unit_for(record)
        try:
            rows.append({
                "user_id": user_id,
                "date": unit_normalizer.require_date(record.get("date")),
                "weight_kg": float(unit_normalizer.weight_to_kg(
                    value, unit, record.get("stones"), record.get("pounds")
                )),
                "unit": unit,
                "notes": (record.get("notes") or "").strip() or None,
            })
        except ValidationError as e:
            raise RowError(line, e) from e
    return rows


def _cells_by_unit(record: Dict[str, str], default_unit: str) -> Dict[str, Dict[str, str]]:
    by_unit = {unit: {} for unit in LENGTH_UNITS}
    for name in MEASUREMENT_FIELDS:
        cell = (record.get(name) or "").strip()
        if not cell:
            continue
        match = LENGTH_CELL.match(cell)
        if match is None:
            raise MissingField(name, f"Invalid {name} {cell!r}. Use a number with an optional 'in' or 'cm' suffix.")
        by_unit[(match["unit"] or default_unit).lower()][name] = match["number"]
    return by_unit


def _measurements_in_cm(record: Dict[str, str], default_unit: str) -> Dict[str, float]:
    lengths = dict.fromkeys(MEASUREMENT_FIELDS)
    for unit, cells in _cells_by_unit(record, default_unit).items():
        converted = unit_normalizer.measurements_to_cm(cells, from_inches=unit == "in", names=cells)
        for name, value in converted.items():
            if value is None:
                raise MissingField(name, f"Invalid {name} {record[name].strip()!r}.")
            lengths[name] = float(value)

    if all(value is None for value in lengths.values()):
        raise MissingField("measurements", f"At least one of {', '.join(MEASUREMENT_FIELDS)} is required.")
    return lengths


def build_measurement_rows(user_id: str, records: Iterable[Dict[str, str]],
                           default_unit: str = "cm") -> List[dict]:
    """Normalize CSV records to body_measurements rows in centimeters; raises RowError naming the first bad line"""
    rows = []
    for line, record in enumerate(records, start=2):
        try:
            row = {"user_id": user_id, "date": unit_normalizer.require_date(record.get("date"))}
            row.update(_measurements_in_cm(record, default_unit))
            row["notes"] = (record.get("notes") or "").strip() or None
            rows.append(row)
        except ValidationError as e:
            raise RowError(line, e) from e
    return rows


def upload(client, rows: List[dict], table: str = "weight_logs") -> int:
    for start in range(0, len(rows), BATCH_SIZE):
        batch = rows[start:start + BATCH_SIZE]
        try:
            client.table(table).insert(batch).execute()
        except Exception as e:
            raise UploadError(table, start // BATCH_SIZE + 1, start + 1, start + len(batch), start, e) from e
    return len(rows)


def _print_weight(row: dict):
    print(f"{row['date']}  {row['weight_kg']:.2f} kg  ({row['unit']})")


def _print_measurements(row: dict):
    lengths = "  ".join(f"{name}={row[name]:.1f}" for name in MEASUREMENT_FIELDS if row[name] is not None)
    print(f"{row['date']}  {lengths} cm")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Bulk-load weight logs or body measurements from a CSV file")
    parser.add_argument("csv_path")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--measurements", action="store_true", help="load body_measurements instead of weight_logs")
    parser.add_argument("--unit", choices=LENGTH_UNITS, default="cm",
                        help="unit for measurement cells without an in/cm suffix")
    parser.add_argument("--dry-run", action="store_true", help="validate and print rows without inserting")
    args = parser.parse_args(argv)

    if args.measurements:
        table, what, show = "body_measurements", "measurement entries", _print_measurements
    else:
        table, what, show = "weight_logs", "weight entries", _print_weight

    with open(args.csv_path, newline="") as handle:
        try:
            records = csv.DictReader(handle)
            if args.measurements:
                rows = build_measurement_rows(args.user_id, records, args.unit)
            else:
                rows = build_weight_rows(args.user_id, records)
        except RowError as e:
            print(f"❌ {args.csv_path} rejected, {e}", file=sys.stderr)
            return 1

    if args.dry_run:
        for row in rows:
            show(row)
        return 0

    settings = SupabaseSettings.from_env()
    if not settings.configured:
        print("❌ SUPABASE_URL and SUPABASE_KEY must be set", file=sys.stderr)
        return 1

    try:
        count = upload(create_client(settings.url, settings.key), rows, table)
    except UploadError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"✅ Logged {count} {what} for {args.user_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
