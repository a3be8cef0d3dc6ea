from __future__ import annotations
from typing import Any, Dict, List

from rollups.buckets import TABLES
from rollups.metrics import Metrics
from rollups.store import TABLE_SPECS, RollupSet, key_columns


def _key_dict(table: str, key) -> Dict[str, Any]:
    out = key_columns(table, key)
    out["date"] = out["date"].isoformat()
    return out


def diff_rollups(expected: RollupSet, stored: RollupSet, sample_limit: int = 50) -> Dict[str, Any]:
    """Compare recomputed rows with stored rows, field by field.

    A missing row and an all-zero row are the same thing. Mismatches are
    data: the caller decides whether to alarm on them.
    """
    tables: Dict[str, Dict[str, int]] = {}
    sample: List[Dict[str, Any]] = []
    total = 0

    for table in TABLES:
        _, _, fields = TABLE_SPECS[table]
        exp = {k: v for k, v in expected.get(table, {}).items() if not v.is_zero()}
        got = {k: v for k, v in stored.get(table, {}).items() if not v.is_zero()}
        counts = {
            "expected_rows": len(exp),
            "stored_rows": len(got),
            "missing_rows": 0,
            "unexpected_rows": 0,
            "mismatched_rows": 0,
            "mismatched_fields": 0,
        }
        for key in sorted(set(exp) | set(got), key=lambda k: tuple("" if p is None else str(p) for p in k)):
            want = exp.get(key, Metrics())
            have = got.get(key, Metrics())
            bad = [f for f in fields if getattr(want, f) != getattr(have, f)]
            if not bad:
                continue
            if key not in got:
                counts["missing_rows"] += 1
            elif key not in exp:
                counts["unexpected_rows"] += 1
            else:
                counts["mismatched_rows"] += 1
            counts["mismatched_fields"] += len(bad)
            total += len(bad)
            for f in bad:
                if len(sample) < sample_limit:
                    sample.append({
                        "table": table,
                        "key": _key_dict(table, key),
                        "field": f,
                        "expected": getattr(want, f),
                        "stored": getattr(have, f),
                    })
        tables[table] = counts

    return {"mismatches": total, "tables": tables, "sample": sample}
