from __future__ import annotations

import csv
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"firm"}
INACTIVE_VALUES = {"0", "false", "no", "n"}


def load_firms_from_csv(csv_path: str) -> list[str]:
    path = Path(csv_path)
    if not path.exists():
        logger.warning("Firm list not found", extra={"path": csv_path})
        return []

    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        columns = {name.strip().lower() for name in (reader.fieldnames or [])}
        if not REQUIRED_COLUMNS.issubset(columns):
            raise ValueError(f"Missing required columns in {csv_path}: {REQUIRED_COLUMNS}")

        rows = [{(key or "").strip().lower(): value for key, value in row.items()} for row in reader]

    firms: list[str] = []
    seen: set[str] = set()
    for row in rows:
        name = " ".join((row.get("firm") or "").split())
        if not name:
            continue
        active_raw = (row.get("active") or "true").strip().lower()
        if active_raw in INACTIVE_VALUES:
            continue
        key = name.casefold()
        if key in seen:
            continue
        seen.add(key)
        firms.append(name)

    return firms
