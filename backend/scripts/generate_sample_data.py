"""Generate synthetic depth readings (CSV) around the Golden Gate for demos.

Scenarios:
  A  main shipping channel: ~40 crowd soundings, 15-20 m
  B  Presidio shoal: repeated 1.5-2.5 m soundings → shallow warnings for a 1.8 m draft
  C  one 80 m sounding inside a tight 17-18 m cluster → confidence halved on import
  D  official survey points at high confidence → "verified" filter
  E  400-day-old low-confidence crowd readings → removed by `depthsafe cleanup`

Usage:
    python backend/scripts/generate_sample_data.py
    depthsafe import-csv backend/scripts/sample_depths.csv --no-network
"""
from __future__ import annotations

import csv
import random
from datetime import datetime, timedelta
from pathlib import Path

random.seed(42)

OUTPUT_PATH = Path(__file__).parent / "sample_depths.csv"

FIELDNAMES = [
    "id", "timestamp", "lat", "lon", "depth", "vessel_draft",
    "confidence", "source", "measurement_method", "gps_accuracy_m",
]

# Readings land in the recent past so area queries (30 day default) see them
BASE_DATE = datetime.utcnow().replace(microsecond=0) - timedelta(hours=6)


def ts(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S")


def make_reading(
    reading_id, dt, lat, lon, depth, draft=1.8, confidence=0.8,
    source="crowdsource", method="sounder", gps_accuracy_m=5.0,
):
    return {
        "id": reading_id, "timestamp": ts(dt),
        "lat": round(lat, 6), "lon": round(lon, 6), "depth": round(depth, 2),
        "vessel_draft": draft, "confidence": confidence, "source": source,
        "measurement_method": method, "gps_accuracy_m": gps_accuracy_m,
    }


rows = []


# ─── A: channel under the bridge ──────────────────────────────────────────────
for i in range(40):
    rows.append(make_reading(
        f"chan-{i:03d}",
        BASE_DATE - timedelta(minutes=17 * i),
        37.8160 + random.uniform(-0.004, 0.004),
        -122.4780 + random.uniform(-0.006, 0.006),
        random.uniform(15.0, 20.0),
        draft=random.choice([1.5, 1.8, 2.4]),
        confidence=round(random.uniform(0.6, 0.9), 2),
        gps_accuracy_m=round(random.uniform(3, 25), 1),
    ))

# ─── B: shoal off the Presidio ───────────────────────────────────────────────
for i in range(8):
    rows.append(make_reading(
        f"shoal-{i:03d}",
        BASE_DATE - timedelta(hours=i),
        37.8085 + random.uniform(-0.0004, 0.0004),
        -122.4720 + random.uniform(-0.0004, 0.0004),
        random.uniform(1.5, 2.5),
        method=random.choice(["sounder", "lead_line"]),
    ))

# ─── C: outlier among a tight cluster in the channel ──────────────────────────
for i in range(5):
    rows.append(make_reading(
        f"cluster-{i:03d}",
        BASE_DATE - timedelta(minutes=3 * i),
        37.8160 + random.uniform(-0.0002, 0.0002),
        -122.4780 + random.uniform(-0.0002, 0.0002),
        random.uniform(17.0, 18.0),
    ))
rows.append(make_reading("chan-outlier", BASE_DATE + timedelta(minutes=5), 37.8160, -122.4780, 80.0, method="visual"))

# ─── D: official survey points ──────────────────────────────────────────────
for i, (lat, lon, depth) in enumerate([(37.8190, -122.4785, 21.3), (37.8120, -122.4700, 12.8), (37.8085, -122.4725, 2.1)]):
    rows.append(make_reading(
        f"survey-{i:03d}", BASE_DATE - timedelta(days=3), lat, lon, depth,
        confidence=0.95, source="official", method="chart", gps_accuracy_m=1.0,
    ))

# ─── E: stale low-confidence crowd data ─────────────────────────────────────
for i in range(5):
    rows.append(make_reading(
        f"stale-{i:03d}",
        BASE_DATE - timedelta(days=400 + i),
        37.8300 + random.uniform(-0.002, 0.002),
        -122.4600 + random.uniform(-0.002, 0.002),
        random.uniform(5, 9),
        confidence=0.3,
        method="visual",
        gps_accuracy_m=40.0,
    ))


with open(OUTPUT_PATH, "w", newline="") as f:
    writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
    writer.writeheader()
    writer.writerows(rows)

print(f"Wrote {len(rows)} readings to {OUTPUT_PATH}")
